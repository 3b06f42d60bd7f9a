"""Tests for the command line entry point (no network commands)."""

import contextlib
import io
import json
import os
import shutil
import tempfile
import unittest

from main import build_parser, main


class TestParser(unittest.TestCase):
    def test_crawl_start_options(self):
        args = build_parser().parse_args(
            ["crawl", "start", "https://example.com/", "--max-pages", "7", "--exclude", r"\.pdf$", "--method", "stealth"]
        )
        self.assertEqual((args.command, args.crawl_action), ("crawl", "start"))
        self.assertEqual(args.max_pages, 7)
        self.assertEqual(args.exclude, [r"\.pdf$"])
        self.assertEqual(args.method, "stealth")

    def test_unknown_method_rejected(self):
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["scrape", "https://example.com/", "--method", "magic"])


class TestMain(unittest.TestCase):
    """Run ``main`` against a throwaway database and profile file."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db = os.path.join(self.tmpdir, "cli.db")
        self.profiles = os.path.join(self.tmpdir, "profiles.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(["--db", self.db, "--profiles", self.profiles, *argv])
        return code, out.getvalue(), err.getvalue()

    def test_no_command(self):
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(main([]), 1)

    def test_empty_profile_report(self):
        code, out, _ = self.run_main("profiles", "report")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), [])
        self.assertTrue(os.path.exists(self.db))
        with open(self.profiles, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f), [])

    def test_unknown_session_is_an_error(self):
        code, _, err = self.run_main("crawl", "status", "missing-session")
        self.assertEqual(code, 2)
        self.assertIn("SessionNotFoundError", err)

    def test_crawl_list_empty(self):
        code, out, _ = self.run_main("crawl", "list")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), [])


if __name__ == "__main__":
    unittest.main()
