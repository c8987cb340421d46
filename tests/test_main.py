import os
import tempfile
import unittest
from types import SimpleNamespace

import db
import main
from backend import InvalidParameter


def _form(**overrides):
    values = dict(main.FORM_DEFAULTS)
    values.update(overrides)
    return values


class ReadFormTests(unittest.TestCase):
    def test_defaults_are_valid(self):
        params = main.read_form(_form())
        self.assertEqual(params['n'], 8)
        self.assertEqual(params['min_groups'], 1)
        self.assertTrue(all(isinstance(value, int) for value in params.values()))

    def test_whitespace_is_ignored(self):
        self.assertEqual(main.read_form(_form(k=' 5 '))['k'], 5)

    def test_non_integer(self):
        with self.assertRaises(InvalidParameter) as ctx:
            main.read_form(_form(j='four'))
        self.assertIn("J", str(ctx.exception))

    def test_constraint_violations(self):
        for overrides in ({'n': '50'}, {'m': '6'}, {'s': '5'}, {'min_groups': '0'}, {'timeout': '0'}):
            with self.assertRaises(InvalidParameter, msg=overrides):
                main.read_form(_form(**overrides))


class ParseUniverseTests(unittest.TestCase):
    def test_spaces_and_commas(self):
        self.assertEqual(main.parse_universe("9, 3 7,1", 4, 10), [1, 3, 7, 9])

    def test_rejections(self):
        for text in ("", "1 2 3", "1 2 2 3", "1 2 3 x", "0 1 2 3", "1 2 3 11"):
            with self.assertRaises(InvalidParameter, msg=text):
                main.parse_universe(text, 4, 10)


class FormattingTests(unittest.TestCase):
    def test_result_text(self):
        sample = SimpleNamespace(ans="45-8-6-4-4-1-2", univ=[3, 5, 8, 13, 21, 34, 40, 44], mode='fast',
                                 sets=[[3, 5, 8, 13, 21, 34], [8, 13, 21, 34, 40, 44]],
                                 result={'status': 'SUCCESS', 'alg': 'Greedy', 'time': 0.25})
        text = main.format_result_text(sample)
        self.assertIn("Result ID: 45-8-6-4-4-1-2", text)
        self.assertIn("  1. 03 05 08 13 21 34", text)
        self.assertIn("Found Sets (2 groups):", text)
        self.assertNotIn("Not every j-subset", text)

    def test_result_text_truncates(self):
        sets = [[i, i + 1] for i in range(1, 61)]
        sample = SimpleNamespace(ans="x", univ=[], mode='fast', sets=sets,
                                 result={'status': 'INFEASIBLE', 'alg': 'Greedy', 'time': 1.0,
                                         'error_message': 'boom'})
        text = main.format_result_text(sample)
        self.assertIn("(10 more not shown)", text)
        self.assertIn("Note: boom", text)
        self.assertIn("Not every j-subset", text)
        self.assertNotIn("51. ", text)

    def test_record_details(self):
        details = {'result_id': '45-8-6-4-4-1-1', 'timestamp': '2024-01-01 00:00:00', 'm': 45, 'n': 8, 'k': 6,
                   'j': 4, 's': 4, 'min_groups': 1, 'mode': 'thorough', 'algorithm': 'Improve',
                   'status': 'SUCCESS', 'time_taken': None, 'num_results': 1,
                   'universe_parsed': [1, 2, 3, 4, 5, 6, 7, 8], 'sets_found_parsed': [[1, 2, 3, 4, 5, 6]]}
        text = main.format_record_details(details)
        self.assertIn("Time Taken: 0.00 seconds", text)
        self.assertIn("  1. 01 02 03 04 05 06", text)
        self.assertIn("Mode: thorough", text)


class DatabasePathTests(unittest.TestCase):
    def setUp(self):
        self.original = db.DB_FILE
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        db.DB_FILE = self.original
        self.tmp.cleanup()

    def test_no_argument_keeps_default(self):
        self.assertEqual(main.configure_db_path(["main.py"]), self.original)

    def test_directory_argument(self):
        path = main.configure_db_path(["main.py", self.tmp.name])
        self.assertEqual(path, os.path.join(self.tmp.name, "kcover_results.db"))
        self.assertEqual(db.DB_FILE, path)

    def test_file_argument_creates_parent(self):
        target = os.path.join(self.tmp.name, "nested", "runs.db")
        self.assertEqual(main.configure_db_path(["main.py", target]), target)
        self.assertTrue(os.path.isdir(os.path.dirname(target)))

    def test_unusable_argument(self):
        self.assertEqual(main.configure_db_path(["main.py", "not-a-db"]), self.original)


if __name__ == "__main__":
    unittest.main()
