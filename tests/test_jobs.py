import unittest
from unittest.mock import Mock

import pytest

from storage.store import EvidenceStore
from sync.errors import JobStateError
from sync.jobs import JobOrchestrator, get_job, wait_for_job


class TestJobOrchestrator(unittest.TestCase):
    def setUp(self):
        self.store = EvidenceStore()
        self.job_id = JobOrchestrator.create(self.store, 'GITHUB_SYNC', {'dryRun': True})
        self.job = JobOrchestrator(self.store, self.job_id)

    def tearDown(self):
        self.store.close()

    def test_created_pending_with_config(self):
        stored = get_job(self.store, self.job_id)
        self.assertEqual(stored.status, 'PENDING')
        self.assertEqual(stored.progress, 0)
        self.assertEqual(stored.config, {'dryRun': True})
        self.assertEqual(len(stored.logs), 1)

    def test_lifecycle_is_written_through(self):
        self.job.start()
        self.job.advance(20, 'Discovered 3 items')
        self.job.log('note')
        self.job.complete({'processed': 2})
        stored = get_job(self.store, self.job_id)
        self.assertEqual(stored.status, 'COMPLETED')
        self.assertEqual(stored.progress, 100)
        self.assertEqual(stored.result, {'processed': 2})
        self.assertIsNotNone(stored.started_at)
        self.assertIsNotNone(stored.completed_at)
        messages = [e['message'] for e in stored.logs]
        self.assertIn('Discovered 3 items', messages)
        self.assertTrue(all({'timestamp', 'message'} <= set(e) for e in stored.logs))

    def test_progress_cannot_go_backwards(self):
        self.job.start()
        self.job.advance(30)
        self.job.advance(30)
        with self.assertRaises(ValueError):
            self.job.advance(25)
        with self.assertRaises(ValueError):
            self.job.advance(101)
        self.assertEqual(get_job(self.store, self.job_id).progress, 30)

    def test_terminal_job_is_immutable(self):
        self.job.start()
        self.job.fail('boom', result={'fetched': 1})
        for mutate in (lambda: self.job.log('late'), lambda: self.job.advance(50), lambda: self.job.complete({}), lambda: self.job.fail('again'), self.job.start):
            with self.assertRaises(JobStateError):
                mutate()
        stored = get_job(self.store, self.job_id)
        self.assertEqual(stored.status, 'FAILED')
        self.assertEqual(stored.error, 'boom')
        self.assertEqual(stored.result, {'fetched': 1})
        self.assertEqual(stored.logs[-1]['level'], 'error')

    def test_to_dict_shape(self):
        data = get_job(self.store, self.job_id).to_dict()
        self.assertEqual(set(data), {'id', 'type', 'status', 'progress', 'result', 'error', 'logs', 'createdAt', 'completedAt'})

    def test_unknown_job(self):
        with self.assertRaises(JobStateError):
            JobOrchestrator(self.store, 'missing')


def test_wait_for_job_gives_up_without_cancelling():
    store = EvidenceStore()
    job_id = JobOrchestrator.create(store, 'JIRA_SYNC', {})
    sleep = Mock()
    job = wait_for_job(store, job_id, interval=0.5, max_attempts=3, sleep=sleep)
    assert job.status == 'PENDING'
    assert sleep.call_count == 2
    sleep.assert_called_with(0.5)
    # the job can still run to completion afterwards
    orchestrator = JobOrchestrator(store, job_id)
    orchestrator.start()
    orchestrator.complete({})
    assert wait_for_job(store, job_id, sleep=sleep).status == 'COMPLETED'


def test_wait_for_unknown_job_raises():
    with pytest.raises(JobStateError):
        wait_for_job(EvidenceStore(), 'nope', sleep=Mock())
