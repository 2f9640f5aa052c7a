import json
import os
import re
import sqlite3
import tempfile
import time
import unittest
from unittest.mock import patch

from normalize.models import WorkItemReference, DetailRecord, Criterion, AnalysisResult
from storage.persister import Persister
from storage.store import EvidenceStore
from sync.config import SyncSettings, SyncRequest
from sync.errors import ClassificationError, PerItemFetchError, RateLimitError
from sync.jobs import get_job, wait_for_job
from sync.pipeline import start_sync_job

REF_RE = re.compile(r'"ref": "([^"<][^"]*)"')


class RecordingStore(EvidenceStore):
    """EvidenceStore that remembers every progress value written for a job."""

    def __init__(self, path=None):
        super().__init__(path)
        self.progress = []

    def update_job(self, job_id, fields):
        if 'progress' in fields:
            self.progress.append(fields['progress'])
        super().update_job(job_id, fields)


class FakeSource:
    source_system = 'github'

    def __init__(self, hits, failing=()):
        self.hits = hits
        self.failing = set(failing)
        self.fetched = []

    def queries(self, request):
        for facet in self.hits:
            yield facet, f'is:pr is:merged {facet}'

    def search_page(self, facet, query, cursor):
        return [WorkItemReference('github', f'acme/web#{n}', f'PR {n}', facet) for n in self.hits[facet]], None

    def fetch_detail(self, ref):
        self.fetched.append(ref.identifier)
        if ref.identifier in self.failing:
            raise PerItemFetchError(ref.identifier, 'GET returned 502', 502)
        return DetailRecord('github', ref.identifier, ref.facet, ref.title, body='Closes WEB-1', additions=12, deletions=3,
                            files=[{'filename': 'src/api/users.py'}], resolved_at='2024-03-02T10:00:00Z', cross_references=['WEB-1'])


class FakeClassifier:
    def __init__(self, error=None, rate_limits=0):
        self.error = error
        self.rate_limits = rate_limits
        self.calls = 0

    def complete(self, prompt, system=None):
        self.calls += 1
        if self.error:
            raise self.error
        if self.rate_limits:
            self.rate_limits -= 1
            raise RateLimitError()
        refs = REF_RE.findall(prompt)
        return json.dumps({'analyses': [{'ref': r, 'summary': f'Work on {r}', 'category': 'feature', 'scope': 'small', 'criterionIds': [1]} for r in refs]})


class TestSyncPipeline(unittest.TestCase):
    def setUp(self):
        self.store = RecordingStore()
        self.store.save_criteria([Criterion(1, 'Delivery', 'Impact', 'Ships features'), Criterion(2, 'Quality', 'Tests', 'Writes tests')])
        self.settings = SyncSettings(github_token='gh', anthropic_api_key='sk')
        self.request = SyncRequest('github', '2024-01-01', '2024-12-31')
        self.sleeps = []

    def tearDown(self):
        self.store.close()

    def _run(self, source, classifier, request=None, settings=None):
        started = start_sync_job(self.store, settings or self.settings, request or self.request, detach=False,
                                 source=source, classifier=classifier, sleep=self.sleeps.append)
        return get_job(self.store, started['jobId'])

    def test_end_to_end_skips_existing(self):
        Persister(self.store, log=lambda m: None).persist(DetailRecord('github', 'acme/web#1', 'author', 'PR 1'), AnalysisResult('acme/web#1', 's', 'feature', 'small'))
        source = FakeSource({'author': [1, 2], 'reviewer': [2, 3]})

        job = self._run(source, FakeClassifier())

        self.assertEqual(job.status, 'COMPLETED', job.error)
        self.assertEqual(job.progress, 100)
        self.assertEqual(job.result['discovered'], 3)
        self.assertEqual(job.result['skipped'], 1)
        self.assertEqual(job.result['processed'], 2)
        self.assertEqual(job.result['created'], 2)
        self.assertEqual(job.result['linked'], 2)
        self.assertEqual(source.fetched, ['acme/web#2', 'acme/web#3'])
        self.assertEqual(self.store.count_evidence(), 2)
        self.assertEqual(self.store.progress, sorted(self.store.progress))
        self.assertEqual(self.store.progress[-1], 100)

    def test_rerun_is_idempotent(self):
        source = FakeSource({'author': [1, 2]})
        self._run(source, FakeClassifier())
        job = self._run(source, FakeClassifier())
        self.assertEqual(job.result['processed'], 0)
        self.assertEqual(job.result['skipped'], 2)
        self.assertEqual(self.store.count_evidence(), 2)

        update = SyncRequest('github', '2024-01-01', '2024-12-31', update_existing=True)
        job = self._run(source, FakeClassifier(), request=update)
        self.assertEqual((job.result['created'], job.result['updated']), (0, 2))
        self.assertEqual(self.store.count_evidence(), 2)

    def test_fetch_failure_is_isolated(self):
        job = self._run(FakeSource({'author': [1, 2, 3]}, failing={'acme/web#2'}), FakeClassifier())
        self.assertEqual(job.status, 'COMPLETED')
        self.assertEqual(job.result['fetchFailed'], 1)
        self.assertEqual(job.result['processed'], 2)
        self.assertTrue(any('acme/web#2' in e['message'] for e in job.logs))

    def test_rate_limit_then_success(self):
        job = self._run(FakeSource({'author': [1, 2]}), FakeClassifier(rate_limits=2))
        self.assertEqual(job.status, 'COMPLETED')
        self.assertEqual(self.sleeps, [30.0, 60.0])

    def test_classification_failure_fails_job_with_partial_counts(self):
        job = self._run(FakeSource({'author': [1, 2]}), FakeClassifier(error=ClassificationError('service returned 500', status=500)))
        self.assertEqual(job.status, 'FAILED')
        self.assertIn('500', job.error)
        self.assertEqual(job.result['fetched'], 2)
        self.assertEqual(job.result['processed'], 0)
        self.assertEqual(self.store.count_evidence(), 0)
        self.assertEqual(job.logs[-1]['level'], 'error')

    def test_missing_credentials_fail_before_discovery(self):
        source = FakeSource({'author': [1]})
        job = self._run(source, FakeClassifier(), settings=SyncSettings(github_token='gh'))
        self.assertEqual(job.status, 'FAILED')
        self.assertIn('ANTHROPIC_API_KEY', job.error)
        self.assertEqual(job.result['discovered'], 0)
        self.assertEqual(source.fetched, [])

    def test_empty_catalog_fails(self):
        store = EvidenceStore()
        started = start_sync_job(store, self.settings, self.request, detach=False, source=FakeSource({'author': [1]}), classifier=FakeClassifier())
        job = get_job(store, started['jobId'])
        self.assertEqual(job.status, 'FAILED')
        self.assertIn('criteria', job.error)

    def test_dry_run_caps_items(self):
        classifier = FakeClassifier()
        request = SyncRequest('github', '2024-01-01', '2024-12-31', dry_run=True)
        job = self._run(FakeSource({'author': list(range(50))}), classifier, request=request)
        self.assertEqual(job.result['discovered'], 20)
        self.assertEqual(job.result['processed'], 20)
        self.assertEqual(classifier.calls, 2)

    def test_nothing_new_completes_early(self):
        classifier = FakeClassifier()
        job = self._run(FakeSource({'author': []}), classifier)
        self.assertEqual(job.status, 'COMPLETED')
        self.assertEqual(job.progress, 100)
        self.assertEqual(classifier.calls, 0)

    def test_detached_job_can_be_polled(self):
        started = start_sync_job(self.store, self.settings, self.request, detach=True, source=FakeSource({'author': [1]}), classifier=FakeClassifier())
        job = wait_for_job(self.store, started['jobId'], interval=0.05, max_attempts=200)
        self.assertEqual(job.status, 'COMPLETED')
        self.assertEqual(job.to_dict()['result']['processed'], 1)

    def test_detached_worker_closes_its_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'evidence.db')
            with EvidenceStore(path) as store:
                store.save_criteria([Criterion(1, 'Delivery', 'Impact', 'Ships features')])
                worker_store = EvidenceStore(path)
                started = start_sync_job(worker_store, self.settings, self.request, detach=True, close_store=True,
                                         source=FakeSource({'author': [1]}), classifier=FakeClassifier())
                job = wait_for_job(store, started['jobId'], interval=0.05, max_attempts=200)
                self.assertEqual(job.status, 'COMPLETED')
                for _ in range(100):
                    if worker_store.conn is None:
                        break
                    time.sleep(0.02)
                self.assertIsNone(worker_store.conn)

    def test_unopenable_cache_fails_job(self):
        with tempfile.TemporaryDirectory() as tmp:
            settings = SyncSettings(github_token='gh', anthropic_api_key='sk', cache_path=os.path.join(tmp, 'missing', 'cache.db'))
            job = self._run(None, None, settings=settings)
        self.assertEqual(job.status, 'FAILED')
        self.assertIn('response cache', job.error)
        self.assertEqual(job.result['discovered'], 0)
        self.assertIsNotNone(job.completed_at)

    def test_failed_evidence_write_is_redone_on_next_run(self):
        source = FakeSource({'author': [1]})
        with patch.object(self.store, 'insert_evidence', side_effect=sqlite3.OperationalError('database is locked')):
            job = self._run(source, FakeClassifier())
        self.assertEqual(job.status, 'FAILED')
        self.assertIn('acme/web#1', job.error)
        self.assertEqual(self.store.count_work_items(), 1)
        self.assertEqual(self.store.count_evidence(), 0)

        job = self._run(source, FakeClassifier())
        self.assertEqual(job.status, 'COMPLETED', job.error)
        self.assertEqual(job.result['skipped'], 0)
        self.assertEqual(job.result['created'], 1)
        self.assertEqual(self.store.count_evidence(), 1)
        self.assertEqual(self.store.count_work_items(), 1)


if __name__ == '__main__':
    unittest.main()
