"""Tests for the command-line interface."""

import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

from py2iqdb.cli import main, parse_args

from mock_iqdb_server import MockIqdbServer


class TestParseArgs(unittest.TestCase):

    def test_query_defaults(self):
        args = parse_args(["query", "iqdb:5566", "--file", "a.jpg"])
        self.assertEqual(args.command, "query")
        self.assertEqual(args.address, "iqdb:5566")
        self.assertEqual(args.file, "a.jpg")
        self.assertEqual(args.db_id, "0")
        self.assertEqual(args.flags, 0)
        self.assertEqual(args.num_results, 10)
        self.assertEqual(args.timeout, 30.0)
        self.assertFalse(args.xml)
        self.assertEqual(args.log_level, "INFO")

    def test_query_target_required(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                parse_args(["query", "iqdb:5566"])

    def test_query_targets_exclusive(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                parse_args(["query", "iqdb:5566", "--file", "a", "--remote-filename", "b"])

    def test_serve_options(self):
        args = parse_args(["--log-level", "DEBUG", "serve", "--config", "g.yaml", "--port", "9000"])
        self.assertEqual(args.command, "serve")
        self.assertEqual(args.config, "g.yaml")
        self.assertEqual(args.port, 9000)
        self.assertIsNone(args.host)
        self.assertEqual(args.log_level, "DEBUG")

    def test_command_required(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                parse_args([])


class TestQueryCommand(unittest.TestCase):

    def setUp(self):
        self.server = MockIqdbServer()
        self.server.start()
        self.addCleanup(self.server.stop)

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(["--log-level", "ERROR"] + argv)
        return code, out.getvalue(), err.getvalue()

    def test_query_local_file(self):
        with tempfile.NamedTemporaryFile(suffix=".jpg", delete=False) as f:
            f.write(b"image-bytes")
        self.addCleanup(os.unlink, f.name)

        code, out, _ = self.run_main(["query", self.server.address, "--file", f.name,
                                      "--num-results", "3"])

        self.assertEqual(code, 0)
        self.assertEqual(out.splitlines(), [
            "1\t95.500000\t640x480",
            "2\t80.250000\t320x240",
        ])
        self.assertEqual(self.server.requests[0].line, "query 0 0 3 :11")
        self.assertEqual(self.server.requests[0].payload, b"image-bytes")

    def test_query_remote_filename_as_xml(self):
        code, out, _ = self.run_main(["query", self.server.address,
                                      "--remote-filename", "/srv/a.jpg", "--xml",
                                      "--service-name", "cli"])
        self.assertEqual(code, 0)
        self.assertIn("<matches threshold='0'>", out)
        self.assertIn("service='cli'", out)
        self.assertEqual(self.server.requests[0].line, "query 0 0 10 /srv/a.jpg")

    def test_missing_local_file(self):
        code, _, err = self.run_main(["query", self.server.address, "--file", "/nonexistent/a.jpg"])
        self.assertEqual(code, 1)
        self.assertIn("cannot read", err)
        self.assertEqual(self.server.requests, [])

    def test_daemon_error(self):
        self.server.responder = lambda request: ["300 disk full", "000 iqdb ready"]
        code, out, err = self.run_main(["query", self.server.address, "--remote-filename", "a.jpg"])
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("Error: error: disk full", err)

    def test_invalid_address(self):
        code, _, err = self.run_main(["query", "no-port", "--remote-filename", "a.jpg"])
        self.assertEqual(code, 1)
        self.assertIn("host:port", err)

    @patch("py2iqdb.cli.query_filename", return_value=[])
    def test_timeout_passed_to_query(self, mock_query):
        """Test the default deadline and the 0 opt-out."""
        self.run_main(["query", self.server.address, "--remote-filename", "a.jpg"])
        self.assertEqual(mock_query.call_args.kwargs["timeout"], 30.0)

        self.run_main(["query", self.server.address, "--remote-filename", "a.jpg",
                       "--timeout", "0"])
        self.assertIsNone(mock_query.call_args.kwargs["timeout"])


class TestServeCommand(unittest.TestCase):

    @patch("uvicorn.run")
    def test_serve_runs_uvicorn_with_overrides(self, mock_run):
        with patch.dict(os.environ, {"IQDB_ADDR": "127.0.0.1:5566"}, clear=False):
            code = main(["--log-level", "ERROR", "serve", "--host", "127.0.0.1", "--port", "9001"])

        self.assertEqual(code, 0)
        mock_run.assert_called_once()
        self.assertEqual(mock_run.call_args.kwargs["host"], "127.0.0.1")
        self.assertEqual(mock_run.call_args.kwargs["port"], 9001)

    @patch("uvicorn.run")
    def test_serve_rejects_invalid_config(self, mock_run):
        with redirect_stderr(io.StringIO()) as err:
            code = main(["--log-level", "ERROR", "serve", "--config", "/nonexistent/gateway.yaml"])
        self.assertEqual(code, 1)
        self.assertIn("Config file not found", err.getvalue())
        mock_run.assert_not_called()


if __name__ == '__main__':
    unittest.main()
