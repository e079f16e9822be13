"""XML rendering of query matches for the HTTP gateway."""

from typing import Iterable
from xml.sax.saxutils import escape

from py2iqdb.core.client import QueryResult

XML_HEADER = "<?xml version='1.0' encoding='UTF-8'?>\n"

_ATTR_ENTITIES = {"'": "&apos;", '"': "&quot;", "\n": "&#10;", "\r": "&#13;", "\t": "&#9;"}


def _attr(value) -> str:
    return escape(str(value), _ATTR_ENTITIES)


def render_match(result: QueryResult, service_name: str) -> str:
    """Render a single <match> element (one line, two-space indent)."""
    return (
        f"  <match id='{result.img_id}' service='{_attr(service_name)}' "
        f"sim='{result.score:f}' width='{result.width}' height='{result.height}'>"
        f"<image id='{result.img_id}'/></match>\n"
    )


def render_matches(results: Iterable[QueryResult], service_name: str, threshold: str) -> str:
    """
    Render the full response document.

    Args:
        results: Matches in the order they should appear
        service_name: Value of every match's ``service`` attribute
        threshold: Value of the root ``threshold`` attribute

    Returns:
        XML document text
    """
    matches = "".join(render_match(r, service_name) for r in results)
    return f"{XML_HEADER}<matches threshold='{_attr(threshold)}'>\n{matches}</matches>"
