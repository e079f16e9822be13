"""Tests for the XML match document renderer."""

import unittest
import xml.etree.ElementTree as ET

from py2iqdb.core.client import QueryResult
from py2iqdb.utils.xml_renderer import XML_HEADER, render_match, render_matches


class TestRenderMatch(unittest.TestCase):

    def test_match_line(self):
        result = QueryResult(img_id=42, score=95.5, width=640, height=480)
        self.assertEqual(
            render_match(result, "iibooru"),
            "  <match id='42' service='iibooru' sim='95.500000' width='640' height='480'>"
            "<image id='42'/></match>\n"
        )

    def test_service_name_is_escaped(self):
        result = QueryResult(img_id=1, score=1.0, width=1, height=1)
        line = render_match(result, "a'b<c>&d")
        self.assertIn("service='a&apos;b&lt;c&gt;&amp;d'", line)


class TestRenderMatches(unittest.TestCase):

    def test_empty_document(self):
        self.assertEqual(
            render_matches([], "iibooru", "60"),
            XML_HEADER + "<matches threshold='60'>\n</matches>"
        )

    def test_document_is_well_formed(self):
        results = [
            QueryResult(img_id=18446744073709551615, score=99.123456, width=1920, height=1080),
            QueryResult(img_id=7, score=0.5, width=-1, height=2),
        ]
        text = render_matches(results, "svc", "75")
        self.assertTrue(text.startswith("<?xml version='1.0' encoding='UTF-8'?>\n"))

        root = ET.fromstring(text.encode("utf-8"))
        self.assertEqual(root.tag, "matches")
        self.assertEqual(root.get("threshold"), "75")

        matches = root.findall("match")
        self.assertEqual([m.get("id") for m in matches], ["18446744073709551615", "7"])
        self.assertEqual(matches[0].get("sim"), "99.123456")
        self.assertEqual(matches[1].get("width"), "-1")
        self.assertEqual(matches[0].find("image").get("id"), "18446744073709551615")
        self.assertTrue(all(m.get("service") == "svc" for m in matches))

    def test_threshold_round_trips_through_parser(self):
        text = render_matches([], "svc", "6\"0")
        root = ET.fromstring(text.encode("utf-8"))
        self.assertEqual(root.get("threshold"), "6\"0")


if __name__ == '__main__':
    unittest.main()
