import sqlite3
import unittest

from normalize.models import DetailRecord, AnalysisResult, Criterion, ComponentTag, MonthlySnapshot
from storage.store import EvidenceStore


def _record(identifier='acme/web#1', role='author', **kw):
    return DetailRecord('github', identifier, role, kw.pop('title', 'Title'), **kw)


def _store_with_evidence(store, record):
    work_item_id, _ = store.upsert_work_item(record)
    store.insert_evidence(work_item_id, 'GITHUB_PR', AnalysisResult(record.identifier, 's', 'bug', 'small'), None, [])
    return work_item_id


class TestEvidenceStore(unittest.TestCase):
    def setUp(self):
        self.store = EvidenceStore()

    def tearDown(self):
        self.store.close()

    def test_existing_identifiers_ignores_role(self):
        _store_with_evidence(self.store, _record('acme/web#1', 'reviewer'))
        found = self.store.existing_identifiers('github', ['acme/web#1', 'acme/web#2'])
        self.assertEqual(found, {'acme/web#1'})
        self.assertEqual(self.store.existing_identifiers('jira', ['acme/web#1']), set())

    def test_work_item_without_evidence_is_not_existing(self):
        self.store.upsert_work_item(_record('acme/web#1'))
        self.assertEqual(self.store.existing_identifiers('github', ['acme/web#1']), set())

    def test_existing_identifiers_large_batch(self):
        for i in range(3):
            _store_with_evidence(self.store, _record(f'acme/web#{i}'))
        wanted = [f'acme/web#{i}' for i in range(1200)]
        self.assertEqual(len(self.store.existing_identifiers('github', wanted)), 3)

    def test_upsert_work_item_matches_natural_key(self):
        first_id, created = self.store.upsert_work_item(_record(additions=1))
        second_id, created_again = self.store.upsert_work_item(_record(additions=9))
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first_id, second_id)
        self.assertEqual(self.store.get_work_item('github', 'acme/web#1', 'author')['additions'], 9)
        other_id, _ = self.store.upsert_work_item(_record(role='reviewer'))
        self.assertNotEqual(other_id, first_id)
        self.assertEqual(self.store.count_work_items('github'), 2)

    def test_components_read_back_typed_from_legacy_rows(self):
        work_item_id, _ = self.store.upsert_work_item(_record(components=[ComponentTag('src/api', 3, 2)]))
        self.assertEqual(self.store.get_work_item('github', 'acme/web#1', 'author')['components'], [ComponentTag('src/api', 3, 2)])
        with self.store.transaction() as conn:
            conn.execute('UPDATE work_items SET components = ? WHERE id = ?', ('["lib/db"]', work_item_id))
        self.assertEqual(self.store.get_work_item('github', 'acme/web#1', 'author')['components'], [ComponentTag('lib/db', 1, 2)])

    def test_insert_evidence_only_once_per_work_item(self):
        work_item_id, _ = self.store.upsert_work_item(_record())
        analysis = AnalysisResult('acme/web#1', 's', 'bug', 'small', [], [1, 2])
        evidence_id, created = self.store.insert_evidence(work_item_id, 'GITHUB_PR', analysis, '2024-01-01', [1, 2])
        again_id, created_again = self.store.insert_evidence(work_item_id, 'GITHUB_PR', analysis, '2024-01-01', [3])
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(evidence_id, again_id)
        self.assertEqual(self.store.criterion_links(evidence_id), [1, 2])
        self.assertEqual(self.store.count_evidence(), 1)

    def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(sqlite3.OperationalError):
            with self.store.transaction() as conn:
                conn.execute("INSERT INTO criteria (id, area, subarea, description) VALUES (1, 'a', 'b', 'c')")
                conn.execute('SELECT * FROM missing_table')
        self.assertEqual(self.store.list_criteria(), [])

    def test_criteria_upsert(self):
        self.store.save_criteria([Criterion(2, 'A', 'B', 'old'), Criterion(1, 'A', 'C', 'x')])
        self.store.save_criteria([Criterion(2, 'A', 'B', 'new')])
        criteria = self.store.list_criteria()
        self.assertEqual([c.id for c in criteria], [1, 2])
        self.assertEqual(criteria[1].description, 'new')

    def test_snapshot_completion_never_reverts(self):
        self.store.save_snapshot(MonthlySnapshot('2024-03', True, '2024-04-02T00:00:00+00:00', {'totalPrs': 1}))
        saved = self.store.save_snapshot(MonthlySnapshot('2024-03', False, '2024-04-05T00:00:00+00:00', {'totalPrs': 2}))
        self.assertTrue(saved.is_complete)
        self.assertEqual(saved.metrics, {'totalPrs': 2})

    def test_jobs_listing_stats_and_clear(self):
        for job_id, status, created in (('a', 'FAILED', '2024-01-01'), ('b', 'COMPLETED', '2024-01-02'), ('c', 'FAILED', '2024-01-03')):
            self.store.insert_job({'id': job_id, 'type': 'GITHUB_SYNC', 'status': status, 'config': {'dryRun': True}, 'logs': [], 'created_at': created})
        self.assertEqual([j['id'] for j in self.store.list_jobs()], ['c', 'b', 'a'])
        self.assertEqual([j['id'] for j in self.store.list_jobs(status='FAILED')], ['c', 'a'])
        self.assertEqual(self.store.get_job('a')['config'], {'dryRun': True})
        self.assertEqual(self.store.job_stats(), {'FAILED': 2, 'COMPLETED': 1, 'total': 3})
        self.assertEqual(self.store.clear_failed_jobs(), 2)
        self.assertIsNone(self.store.get_job('a'))


if __name__ == '__main__':
    unittest.main()
