import unittest
import sys
import os

# Ensure we can import from parent directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import bibcore as bc
from bibcore import DuplicateReason, DuplicateRecord


class TestDeduplicate(unittest.TestCase):

    def test_key_duplicate_keeps_first_body(self):
        first = "@article{key1,\n  title = {First},\n  year = {2020}\n}"
        second = "@article{key1,\n  title = {Second},\n  year = {2021}\n}"
        result = bc.deduplicate(first + "\n\n" + second)
        self.assertEqual(result.records["key1"].raw, first)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(
            result.duplicate_log,
            [DuplicateRecord("key1", "key1", DuplicateReason.KEY_DUPLICATE)],
        )

    def test_smart_dedup_matches_normalized_titles(self):
        text = (
            "@article{a, title = {Hello World}, year = {2020}}\n"
            "@article{b, title = {Hello   World!}, year = {2020}}\n"
        )
        result = bc.deduplicate(text, smart_dedup=True)
        self.assertEqual(result.unique, 1)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(
            result.duplicate_log[0],
            DuplicateRecord("b", "a", DuplicateReason.TITLE_DUPLICATE),
        )

    def test_smart_dedup_off_keeps_both(self):
        text = (
            "@article{a, title = {Hello World}, year = {2020}}\n"
            "@article{b, title = {Hello   World!}, year = {2020}}\n"
        )
        result = bc.deduplicate(text)
        self.assertEqual(list(result.records), ["a", "b"])
        self.assertEqual(result.duplicates, 0)

    def test_short_titles_are_not_signatures(self):
        text = "@misc{a, title = {Notes}}\n@misc{b, title = {Notes}}\n"
        result = bc.deduplicate(text, smart_dedup=True)
        self.assertEqual(result.unique, 2)

    def test_key_check_takes_priority(self):
        text = (
            "@article{a, title = {Exactly the same title}}\n"
            "@article{a, title = {Exactly the same title}}\n"
        )
        result = bc.deduplicate(text, smart_dedup=True)
        self.assertEqual(result.duplicate_log[0].reason, DuplicateReason.KEY_DUPLICATE)

    def test_sort_by_key(self):
        text = "@misc{zebra, note={z}}\n@misc{apple, note={a}}\n@misc{mango, note={m}}\n"
        self.assertEqual(list(bc.deduplicate(text, sort_by_key=True).records), ["apple", "mango", "zebra"])
        self.assertEqual(list(bc.deduplicate(text).records), ["zebra", "apple", "mango"])

    def test_counts_are_consistent(self):
        text = (
            "@misc{a, note={1}}\n"
            "@misc{a, note={2}}\n"
            "@misc{b, note={3}}\n"
            "@misc{, note={no key}}\n"
            "@misc{c, note={unclosed}\n"
        )
        result = bc.deduplicate(text)
        self.assertEqual(result.total, 3)
        self.assertEqual(result.unique, 2)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(result.unique + result.duplicates, result.total)
        self.assertEqual(result.parse_errors, 2)
        self.assertEqual(len(result.errors), 2)

    def test_deduplicate_records_rescans_bodies(self):
        records = bc.scan_entries("@misc{a, note={1}}\n@misc{a, note={2}}").records
        result = bc.deduplicate_records(records)
        self.assertEqual(result.unique, 1)
        self.assertEqual(result.duplicates, 1)


class TestReports(unittest.TestCase):

    def setUp(self):
        text = (
            "@article{a, title = {Hello World}, year = {2020}}\n"
            "@article{b, title = {Hello World}, year = {2020}}\n"
            "@article{c, title = {Something else entirely}}\n"
        )
        self.result = bc.deduplicate(text, smart_dedup=True)

    def test_render_deduplicated(self):
        output = bc.render_deduplicated(self.result, self.result.records, bc.MonthStyle.FULL_NAME)
        self.assertTrue(output.startswith("% Total entries parsed: 3\n% Unique kept: 2\n"))
        self.assertIn("% Duplicates removed: 1", output)
        self.assertIn("% Month style: FULL_NAME", output)
        self.assertIn("@article{a, title = {Hello World}, year = {2020}}\n\n@article{c,", output)
        self.assertNotIn("{b,", output)

    def test_duplicates_report(self):
        report = bc.format_duplicates_report(self.result)
        self.assertIn("Total duplicates removed: 1", report)
        self.assertIn("- dropped=b kept=a reason=TITLE_DUPLICATE", report)

    def test_summary(self):
        summary = bc.format_summary(self.result, sort_by_key=False, smart_dedup=True)
        self.assertIn("Unique entries: 2", summary)
        self.assertIn("Smart dedupe: true", summary)
        self.assertIn("Month style: keep", summary)


class TestBibtexparserLoader(unittest.TestCase):

    def test_loader_rebuilds_records(self):
        text = "@Article{Key1,\n  Title = {Hello {World}},\n  Year = {2020}\n}\n"
        scanned = bc.load_with_bibtexparser(text)
        self.assertEqual(len(scanned.records), 1)
        record = scanned.records[0]
        self.assertEqual((record.kind, record.key), ("article", "Key1"))
        self.assertEqual(record.field("title"), "Hello {World}")
        self.assertEqual(record.field("year"), "2020")
        self.assertEqual(bc.scan_entries(record.raw).records[0].key, "Key1")


if __name__ == '__main__':
    unittest.main()
