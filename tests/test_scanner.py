import unittest
import sys
import os

# Ensure we can import from parent directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import bibcore as bc


class TestScanEntries(unittest.TestCase):

    def test_nested_braces_single_record(self):
        text = "@article{key1,\n  title={A {Nested} Title with {Multiple {Levels}}},\n  year={2020}\n}"
        result = bc.scan_entries(text)
        self.assertEqual(len(result.records), 1)
        self.assertEqual(result.errors, [])
        self.assertEqual(
            bc.extract_field(result.records[0].raw, "title"),
            "A {Nested} Title with {Multiple {Levels}}",
        )

    def test_unclosed_entry_reports_error(self):
        result = bc.scan_entries("@article{x, title={Y}")
        self.assertEqual(result.records, [])
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Unclosed entry starting at index 0", result.errors[0])

    def test_unclosed_entry_stops_scanning(self):
        text = "@misc{a, note={ok}}\n@article{b, title={Open\n@misc{c, note={never}}"
        result = bc.scan_entries(text)
        self.assertEqual([r.key for r in result.records], ["a"])
        self.assertEqual(len(result.errors), 1)

    def test_skips_comment_string_and_preamble(self):
        text = (
            "@comment{anything goes, even }{ here}\n"
            '@string{foo = "bar"}\n'
            '@preamble{"\\newcommand{\\x}{y}"}\n'
            "@article{a, title={T}}\n"
        )
        result = bc.scan_entries(text)
        self.assertEqual([r.key for r in result.records], ["a"])
        self.assertEqual(result.errors, [])

    def test_entry_without_key_is_an_error(self):
        text = "@article{title={No key}}\n@book{b, title={B}}"
        result = bc.scan_entries(text)
        self.assertEqual([r.key for r in result.records], ["b"])
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Entry without key at index 0"))

    def test_parenthesised_record(self):
        text = "@article(p1, title={Paren (nested) title}, year=2001)"
        result = bc.scan_entries(text)
        self.assertEqual(len(result.records), 1)
        record = result.records[0]
        self.assertEqual((record.kind, record.key), ("article", "p1"))
        self.assertEqual(record.raw, text)
        self.assertEqual(record.field("year"), "2001")

    def test_escaped_quote_does_not_close_value(self):
        text = r'@article{q, title = "A \"quoted\" word", year = 2021}'
        result = bc.scan_entries(text)
        self.assertEqual(len(result.records), 1)
        self.assertEqual(result.records[0].field("title"), r'A \"quoted\" word')
        self.assertEqual(result.records[0].field("year"), "2021")

    def test_at_sign_in_free_text_is_ignored(self):
        text = "Contact someone@example.com.\n@misc{m1, note={hi}}"
        result = bc.scan_entries(text)
        self.assertEqual([r.key for r in result.records], ["m1"])
        self.assertEqual(result.errors, [])

    def test_kind_is_lower_cased_and_body_trimmed(self):
        text = "junk before\n  @ARTICLE{K1,\n  title = {T}\n}\n  trailing"
        record = bc.scan_entries(text).records[0]
        self.assertEqual(record.kind, "article")
        self.assertEqual(record.key, "K1")
        self.assertTrue(record.raw.startswith("@ARTICLE{K1,"))
        self.assertTrue(record.raw.endswith("}"))

    def test_rebuilt_record_scans_to_same_identity(self):
        text = "@inproceedings{conf1, booktitle = {Proc.}, title = {Hello, {World}}, note = \"n\", year = 1999}"
        record = bc.scan_entries(text).records[0]
        rebuilt = bc.rebuild_entry(record.kind, record.key, record.fields())
        again = bc.scan_entries(rebuilt).records[0]
        self.assertEqual((again.kind, again.key), (record.kind, record.key))
        self.assertEqual(again.fields(), record.fields())

    def test_empty_input(self):
        self.assertEqual(bc.scan_entries("").records, [])
        self.assertEqual(bc.scan_entries(None).errors, [])


if __name__ == '__main__':
    unittest.main()
