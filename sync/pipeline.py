"""
Sync job runner: discovery -> delta -> detail fetch -> analysis -> persistence.

Phases run one after another inside a job. Progress milestones:
5 config, 10 clients ready, 20 discovered, 25 delta, 25-50 fetch,
50-80 analysis, 80-98 persistence, 100 done.
"""

import time
import sqlite3
import logging
import threading
from typing import Dict, Any, Optional, Callable

from ingest.anthropic import ClassificationClient
from scoring.analyzer import BatchAnalyzer
from storage.cache import Cache
from storage.persister import Persister
from sync.config import SyncSettings, SyncRequest
from sync.details import DetailFetcher
from sync.discovery import Discoverer, DeltaFilter
from sync.errors import SyncError, ConfigurationError
from sync.jobs import JobOrchestrator, Job
from sync.sources import build_source

logger = logging.getLogger(__name__)

RESULT_KEYS = ('discovered', 'skipped', 'fetched', 'fetchFailed', 'analyzed', 'processed', 'created', 'updated', 'linked')


def _span(job: JobOrchestrator, start: int, width: int) -> Callable[[int, int], None]:
    """Progress callback mapping ``done/total`` onto [start, start + width]."""
    def report(done: int, total: int):
        job.advance(start + (width * done) // max(total, 1))
    return report


def _open_cache(path: str) -> Cache:
    try:
        return Cache(path)
    except sqlite3.Error as ex:
        raise ConfigurationError(f"cannot open response cache {path}: {ex}") from ex


def _run_phases(job: JobOrchestrator, store, settings: SyncSettings, request: SyncRequest, counts: Dict[str, int],
                source=None, classifier=None, cache: Optional[Cache] = None, sleep: Callable[[float], None] = time.sleep):
    job.advance(5, f"Loading {request.source} sync configuration")
    settings.require(request.source)
    criteria = store.list_criteria()
    if not criteria:
        raise ConfigurationError("no performance criteria configured; import a criteria catalog first")
    if not request.scopes:
        request.scopes = settings.scopes(request.source)

    source = source or build_source(request.source, settings, cache=cache)
    classifier = classifier or ClassificationClient(settings.anthropic_api_key, settings.anthropic_model)
    job.advance(10, f"Date range: {request.start_date} to {request.end_date}")

    limit = settings.dry_run_limit if request.dry_run else None
    refs = Discoverer(source, job.log).discover(request, limit=limit)
    counts['discovered'] = len(refs)
    job.advance(20, f"Discovered {len(refs)} items")

    delta, skipped = DeltaFilter(store, job.log).filter(source.source_system, refs, request.update_existing, limit=limit)
    counts['skipped'] = skipped
    job.advance(25, f"{len(delta)} items to fetch")
    if not delta:
        return

    records, failed = DetailFetcher(source, job.log, settings.fetch_workers).fetch(delta, on_item=_span(job, 25, 25))
    counts['fetched'] = len(records)
    counts['fetchFailed'] = failed
    job.advance(50, f"Fetched {len(records)} items ({failed} failed)")
    if not records:
        return

    analyzer = BatchAnalyzer(classifier, criteria, sleep=sleep, log=job.log, user_context=settings.user_context)
    analyses = analyzer.analyze(records, on_batch=_span(job, 50, 30))
    counts['analyzed'] = len(analyses)
    job.advance(80, f"Analyzed {len(analyses)} items")

    Persister(store, job.log).persist_all(records, analyses, on_item=_span(job, 80, 18), counts=counts)
    job.advance(98)


def run_sync_job(store, job_id: str, settings: SyncSettings, request: SyncRequest, source=None, classifier=None,
                 sleep: Callable[[float], None] = time.sleep) -> Job:
    """Run a created job to a terminal state and return it.

    Any error fails the job with the counts reached so far; it is not re-raised.
    """
    job = JobOrchestrator(store, job_id)
    job.start()
    counts: Dict[str, int] = {k: 0 for k in RESULT_KEYS}
    cache = None
    try:
        if settings.cache_path and source is None:
            cache = _open_cache(settings.cache_path)
        _run_phases(job, store, settings, request, counts, source=source, classifier=classifier, cache=cache, sleep=sleep)
    except SyncError as ex:
        job.fail(str(ex), result=dict(counts))
    except Exception as ex:
        logger.exception("sync job %s crashed", job_id)
        job.fail(f"{type(ex).__name__}: {ex}", result=dict(counts))
    else:
        job.complete(dict(counts))
    finally:
        if cache is not None:
            cache.close()
    return job.job


def _run_job(store, job_id: str, settings: SyncSettings, request: SyncRequest, close_store: bool, kwargs: Dict[str, Any]):
    try:
        run_sync_job(store, job_id, settings, request, **kwargs)
    finally:
        if close_store:
            store.close()


def start_sync_job(store, settings: SyncSettings, request: SyncRequest, detach: bool = True, close_store: bool = False, **kwargs) -> Dict[str, Any]:
    """Create a sync job and run it, on a background thread when ``detach``.

    With ``close_store`` the runner closes ``store`` once the job ends.
    Returns ``{"jobId": id}``; poll the store (``wait_for_job``) for progress.
    """
    job_id = JobOrchestrator.create(store, request.job_type, request.to_dict())
    if detach:
        worker = threading.Thread(target=_run_job, args=(store, job_id, settings, request, close_store, kwargs), name=f"sync-{job_id[:8]}")
        worker.start()
    else:
        _run_job(store, job_id, settings, request, close_store, kwargs)
    return {'jobId': job_id}
