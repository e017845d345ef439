import unittest
import sys
import os
import json
import tempfile

# Ensure we can import from parent directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import bibsettings
from bibsettings import Settings


class TestSettingsFile(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "prefs", "settings.json")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_gives_defaults(self):
        self.assertEqual(bibsettings.load_settings(self.path), Settings())
        self.assertEqual(bibsettings.load_settings(None), Settings())

    def test_save_and_load(self):
        settings = Settings(smart_dedup=True, mode="aggressive-doi-only", month_style="full", workers=3)
        bibsettings.save_settings(settings, self.path)
        self.assertEqual(bibsettings.load_settings(self.path), settings)

    def test_invalid_values_fall_back(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(
                {"mode": "reckless", "workers": 0, "timeout": "abc", "sort_by_key": "yes", "unknown": 1},
                handle,
            )
        settings = bibsettings.load_settings(self.path)
        self.assertEqual(settings.mode, "safe")
        self.assertEqual(settings.workers, 1)
        self.assertEqual(settings.timeout, 10.0)
        self.assertFalse(settings.sort_by_key)

    def test_unreadable_file_gives_defaults(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as handle:
            handle.write("[1, 2")
        self.assertEqual(bibsettings.load_settings(self.path), Settings())


class TestRecentFiles(unittest.TestCase):

    def test_most_recent_first_without_duplicates(self):
        settings = Settings()
        for name in ("a.bib", "b.bib", "a.bib"):
            bibsettings.add_recent_file(settings, name)
        self.assertEqual(settings.recent_files, [os.path.abspath("a.bib"), os.path.abspath("b.bib")])

    def test_list_is_capped(self):
        settings = Settings()
        for index in range(15):
            bibsettings.add_recent_file(settings, f"file{index}.bib")
        self.assertEqual(len(settings.recent_files), bibsettings.MAX_RECENT_FILES)
        self.assertEqual(settings.recent_files[0], os.path.abspath("file14.bib"))


class TestEnvironmentOverrides(unittest.TestCase):

    def test_overrides(self):
        environ = {
            "UNIQUE_REFS_MAILTO": " me@example.org ",
            "UNIQUE_REFS_WORKERS": "4",
            "UNIQUE_REFS_TIMEOUT": "2.5",
            "UNIQUE_REFS_DELAY": "soon",
        }
        settings = bibsettings.apply_env_overrides(Settings(), environ)
        self.assertEqual(settings.mailto, "me@example.org")
        self.assertEqual(settings.workers, 4)
        self.assertEqual(settings.timeout, 2.5)
        self.assertEqual(settings.request_delay, 0.15)

    def test_no_variables_changes_nothing(self):
        self.assertEqual(bibsettings.apply_env_overrides(Settings(), {}), Settings())


if __name__ == '__main__':
    unittest.main()
