import os
import random
import tempfile
import unittest

import backend
import db


def _record(run_index, **extra):
    record = {'m': 45, 'n': 8, 'k': 6, 'j': 4, 's': 4, 'run_index': run_index, 'num_results': 2,
              'min_groups': 1, 'mode': 'fast', 'algorithm': 'Greedy', 'status': 'SUCCESS', 'time_taken': 0.5,
              'universe': [1, 2, 3, 4, 5, 6, 7, 8], 'sets_found': [[1, 2, 3, 4, 5, 6], [3, 4, 5, 6, 7, 8]]}
    record.update(extra)
    return record


class DatabaseTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_file = os.path.join(self.tmp.name, "test_results.db")
        self.assertTrue(db.setup_database(self.db_file))

    def tearDown(self):
        self.tmp.cleanup()

    def _result_id(self, run_index):
        for record in db.get_results_summary(self.db_file):
            if record['run_index'] == run_index:
                return record['id']
        return None

    def test_setup_is_idempotent(self):
        self.assertTrue(db.setup_database(self.db_file))

    def test_run_index_counts_per_parameter_set(self):
        self.assertEqual(db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file), 1)
        self.assertEqual(db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file), 2)
        self.assertEqual(db.get_and_increment_run_index(45, 9, 6, 4, 4, self.db_file), 1)
        counters = db.get_all_counters(self.db_file)
        self.assertEqual([c['last_run_index'] for c in counters], [2, 1])

    def test_save_and_read_back(self):
        self.assertTrue(db.save_result(_record(1), self.db_file))
        summary = db.get_results_summary(self.db_file)
        self.assertEqual(len(summary), 1)
        self.assertEqual(db.format_result_id(summary[0]), "45-8-6-4-4-1-2")

        details = db.get_result_details(summary[0]['id'], self.db_file)
        self.assertEqual(details['result_id'], "45-8-6-4-4-1-2")
        self.assertEqual(details['universe_parsed'], [1, 2, 3, 4, 5, 6, 7, 8])
        self.assertEqual(details['sets_found_parsed'], [[1, 2, 3, 4, 5, 6], [3, 4, 5, 6, 7, 8]])
        self.assertEqual(details['mode'], 'fast')

    def test_duplicate_run_rejected(self):
        self.assertTrue(db.save_result(_record(1), self.db_file))
        self.assertFalse(db.save_result(_record(1), self.db_file))

    def test_missing_keys_rejected(self):
        record = _record(1)
        del record['num_results']
        self.assertFalse(db.save_result(record, self.db_file))
        self.assertEqual(db.get_results_summary(self.db_file), [])

    def test_unknown_record(self):
        self.assertIsNone(db.get_result_details(12345, self.db_file))
        self.assertFalse(db.delete_result(12345, self.db_file))

    def test_deleting_newest_run_releases_index(self):
        for _ in range(2):
            run_index = db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file)
            self.assertTrue(db.save_result(_record(run_index), self.db_file))

        self.assertTrue(db.delete_result(self._result_id(2), self.db_file))
        self.assertEqual(db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file), 2)

    def test_deleting_older_run_keeps_counter(self):
        for _ in range(2):
            run_index = db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file)
            self.assertTrue(db.save_result(_record(run_index), self.db_file))

        self.assertTrue(db.delete_result(self._result_id(1), self.db_file))
        self.assertEqual(db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file), 3)
        self.assertEqual(len(db.get_results_summary(self.db_file)), 1)

    def test_save_sample(self):
        run_index = db.get_and_increment_run_index(45, 8, 6, 4, 4, self.db_file)
        sample = backend.Sample(45, 8, 6, 4, 4, run_idx=run_index, rand_instance=random.Random(4), use_process=False)
        sample.run()
        self.assertTrue(db.save_sample(sample, self.db_file))

        details = db.get_result_details(self._result_id(run_index), self.db_file)
        self.assertEqual(details['result_id'], sample.ans)
        self.assertEqual(details['universe_parsed'], sample.univ)
        self.assertEqual(details['sets_found_parsed'], sample.sets)
        self.assertEqual(details['algorithm'], 'Greedy')
        self.assertEqual(details['status'], 'SUCCESS')

    def test_default_path_is_read_at_call_time(self):
        original = db.DB_FILE
        db.DB_FILE = os.path.join(self.tmp.name, "default.db")
        try:
            self.assertTrue(db.setup_database())
            self.assertTrue(os.path.exists(db.DB_FILE))
        finally:
            db.DB_FILE = original


if __name__ == "__main__":
    unittest.main()
