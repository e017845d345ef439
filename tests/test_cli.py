import unittest
import sys
import os
import io
import json
import tempfile
from contextlib import redirect_stdout, redirect_stderr
from unittest.mock import patch

# Ensure we can import from parent directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import unique_refs
from bibsources import SourceDataset

BIB = """@article{zebra,
  title = {Hello World},
  year = {2020},
  month = {9}
}

@article{apple,
  title = {Hello   World!},
  year = {2020}
}

@misc{mango,
  title = {Completely different},
  doi = {10.1000/mango}
}

@misc{mango,
  note = {same key again}
}
"""


class StubSource:
    name = "Stub"
    supports_author_year = False

    def by_doi(self, doi):
        return SourceDataset(doi=doi, volume="9", provenance="Stub")

    def by_title(self, title):
        return None


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.bib = os.path.join(self.tmp.name, "refs.bib")
        with open(self.bib, "w", encoding="utf-8") as handle:
            handle.write(BIB)

    def tearDown(self):
        self.tmp.cleanup()

    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = unique_refs.main(list(argv))
        return code, out.getvalue()

    def read(self, name):
        with open(os.path.join(self.tmp.name, name), "r", encoding="utf-8") as handle:
            return handle.read()

    def test_dedup_writes_default_output(self):
        code, out = self.run_main("dedup", self.bib, "--smart-dedup", "--sort-by-key", "--month-style", "full")
        self.assertEqual(code, 0)
        output = self.read("refs_unique.bib")
        self.assertIn("% Duplicates removed: 2", output)
        self.assertLess(output.index("@misc{mango"), output.index("@article{zebra"))
        self.assertNotIn("@article{apple", output)
        self.assertIn("month = {September}", output)
        self.assertIn("- dropped=apple kept=zebra reason=TITLE_DUPLICATE", out)

    def test_extension_is_optional_and_reports_are_written(self):
        summary = os.path.join(self.tmp.name, "summary.txt")
        report = os.path.join(self.tmp.name, "dups.txt")
        code, _ = self.run_main(
            "dedup", os.path.join(self.tmp.name, "refs"), "--summary", summary, "--duplicates-report", report
        )
        self.assertEqual(code, 0)
        self.assertIn("Unique entries: 3", self.read("summary.txt"))
        self.assertIn("- dropped=mango kept=mango reason=KEY_DUPLICATE", self.read("dups.txt"))

    def test_missing_input_exits_when_not_interactive(self):
        with patch("sys.stdin") as stdin:
            stdin.isatty.return_value = False
            with self.assertRaises(SystemExit):
                self.run_main("dedup", os.path.join(self.tmp.name, "absent.bib"))

    def test_bibtexparser_loader(self):
        code, _ = self.run_main("dedup", self.bib, "--parser", "bibtexparser", "-o",
                                os.path.join(self.tmp.name, "out.bib"))
        self.assertEqual(code, 0)
        self.assertIn("@article{zebra,", self.read("out.bib"))

    def test_verify_uses_sources_and_writes_summary(self):
        with patch("unique_refs.default_sources", return_value=[StubSource()]):
            code, out = self.run_main("verify", self.bib, "--delay", "0", "--mode", "aggressive-doi-only")
        self.assertEqual(code, 0)
        output = self.read("refs_verified.bib")
        self.assertIn("% VERIFICATION & DEDUPLICATION SUMMARY", output)
        self.assertIn("% Duplicates removed: 1", output)
        self.assertIn("volume = {9}", output)
        self.assertIn("Corrected: 1", out)

    def test_extract_command(self):
        text_path = os.path.join(self.tmp.name, "paper.txt")
        with open(text_path, "w", encoding="utf-8") as handle:
            handle.write(
                "Body.\n\nReferences\n"
                "[1] Smith, J. 2020. Deep learning for things. Journal of X.\n"
                "[2] Doe, A. 2019. Another important study. Proceedings of Y.\n"
            )
        code, out = self.run_main("extract", text_path)
        self.assertEqual(code, 0)
        self.assertIn("@misc{smith2020learning,", self.read("paper_extracted.bib"))
        self.assertIn("Parsed 2 raw references", out)

    def test_settings_are_used_and_saved(self):
        settings_path = os.path.join(self.tmp.name, "settings.json")
        with open(settings_path, "w", encoding="utf-8") as handle:
            json.dump({"sort_by_key": True}, handle)
        code, _ = self.run_main("--settings", settings_path, "dedup", self.bib)
        self.assertEqual(code, 0)
        output = self.read("refs_unique.bib")
        self.assertLess(output.index("@article{apple"), output.index("@article{zebra"))
        with open(settings_path, "r", encoding="utf-8") as handle:
            saved = json.load(handle)
        self.assertEqual(saved["recent_files"], [os.path.abspath(self.bib)])
        self.assertTrue(saved["sort_by_key"])


if __name__ == '__main__':
    unittest.main()
