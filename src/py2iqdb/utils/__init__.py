"""Utility modules for py2iqdb."""

from .xml_renderer import render_match, render_matches

__all__ = ['render_match', 'render_matches']
