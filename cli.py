"""
CLI entry point for evidence-sync. Runs sync jobs, polls them, manages
monthly snapshots, the criterion catalog and the HTTP response cache.
"""

import argparse
import json
import sys

from normalize.criteria import load_criteria
from report.snapshots import get_or_generate_snapshot
from storage.cache import Cache
from storage.store import EvidenceStore
from sync.config import load_settings, SyncRequest
from sync.errors import SyncError
from sync.jobs import JobOrchestrator, get_job, wait_for_job
from sync.logging_config import configure_logging
from sync.pipeline import run_sync_job, start_sync_job


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _print_cache_stats(cache: Cache):
    _print_json(cache.stats())


def _print_cache_list(cache: Cache):
    _print_json(cache.list_keys(limit=1000))


def _print_cache_get(cache: Cache, key: str):
    entry = cache.get(key)
    if entry is None:
        print(f"Cache key not found: {key}")
    else:
        _print_json(entry)


def _remove_cache_key(cache: Cache, key: str, force: bool):
    if not force:
        confirm = input(f"Are you sure you want to remove cache key '{key}' from {cache.path}? [y/N]: ")
        if confirm.strip().lower() not in ("y", "yes"):
            print("Aborted cache key removal.")
            return
    removed = cache.delete_key(key)
    if removed:
        print(f"Removed {removed} row(s) for key: {key}")
    else:
        print(f"Cache key not found: {key}")


def _clear_cache(cache: Cache, force: bool):
    if not force:
        confirm = input(f"Are you sure you want to clear the cache at {cache.path}? This cannot be undone. [y/N]: ")
        if confirm.strip().lower() not in ("y", "yes"):
            print("Aborted cache clear.")
            return
    cache.clear()
    print(f"Cleared cache at {cache.path}")


def cmd_cache(args, settings) -> int:
    cache = Cache(args.cache or settings.cache_path or "cache.db")
    try:
        # first enabled flag wins
        flag_actions = [
            (args.info, lambda: _print_cache_stats(cache)),
            (args.clear, lambda: _clear_cache(cache, args.force)),
            (args.list, lambda: _print_cache_list(cache)),
            (bool(args.get), lambda: _print_cache_get(cache, args.get)),
            (bool(args.remove), lambda: _remove_cache_key(cache, args.remove, args.force)),
        ]
        for enabled, handler in flag_actions:
            if enabled:
                handler()
                return 0
        _print_cache_stats(cache)
        return 0
    finally:
        cache.close()


def cmd_sync(args, settings, store) -> int:
    data = {
        'startDate': args.start,
        'endDate': args.end,
        'updateExisting': args.update_existing,
        'dryRun': args.dry_run,
        ('repositories' if args.source == 'github' else 'projects'): args.scope or None,
    }
    request = SyncRequest.from_dict(args.source, data)
    if args.workers:
        settings.fetch_workers = max(1, args.workers)

    if args.detach:
        # the worker gets its own connection and closes it when the job ends
        started = start_sync_job(EvidenceStore(store.path), settings, request, detach=True, close_store=True)
        _print_json(started)
        job = wait_for_job(store, started['jobId'], interval=args.interval, max_attempts=args.max_attempts)
        if not job.is_terminal:
            print(f"Stopped polling; job {job.id} is still {job.status}", file=sys.stderr)
    else:
        job_id = JobOrchestrator.create(store, request.job_type, request.to_dict())
        job = run_sync_job(store, job_id, settings, request)
    _print_json(job.to_dict())
    return 1 if job.status == 'FAILED' else 0


def cmd_job(args, store) -> int:
    if args.action == 'list':
        jobs = store.list_jobs(limit=args.limit, job_type=args.type, status=args.status)
        _print_json([{k: j[k] for k in ('id', 'type', 'status', 'progress', 'error', 'created_at', 'completed_at')} for j in jobs])
        return 0
    if args.action == 'stats':
        _print_json(store.job_stats())
        return 0
    if args.action == 'clear-failed':
        print(f"Deleted {store.clear_failed_jobs()} failed job(s)")
        return 0

    if not args.job_id:
        print("job status requires a job id", file=sys.stderr)
        return 2
    if args.wait:
        job = wait_for_job(store, args.job_id, interval=args.interval, max_attempts=args.max_attempts)
    else:
        job = get_job(store, args.job_id)
    if job is None:
        print(f"Job not found: {args.job_id}", file=sys.stderr)
        return 1
    _print_json(job.to_dict())
    return 0


def cmd_snapshot(args, store) -> int:
    snapshot, regenerated = get_or_generate_snapshot(store, args.month, force=args.force)
    out = snapshot.to_dict()
    out['regenerated'] = regenerated
    _print_json(out)
    return 0


def cmd_criteria(args, store) -> int:
    if args.action == 'import':
        if not args.file:
            print("criteria import requires a file", file=sys.stderr)
            return 2
        count = store.save_criteria(load_criteria(args.file))
        print(f"Imported {count} criteria into {store.path}")
        return 0
    _print_json([c.to_dict() for c in store.list_criteria()])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evidence-sync", description="Incremental evidence sync and analysis")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML settings file (environment variables take precedence)")
    parser.add_argument("--db", type=str, default=None, help="Path to the evidence SQLite database (overrides EVIDENCE_DB_PATH)")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Run a sync job")
    p_sync.add_argument("source", choices=("github", "jira"))
    p_sync.add_argument("--start", type=str, default=None, help="Start date (YYYY-MM-DD); defaults to one year before --end")
    p_sync.add_argument("--end", type=str, default=None, help="End date (YYYY-MM-DD); defaults to today")
    p_sync.add_argument("--repo", "--project", dest="scope", action="append", default=[], help="Repository (owner/name) or Jira project key; repeatable")
    p_sync.add_argument("--update-existing", action="store_true", help="Re-fetch and re-analyze items that are already stored")
    p_sync.add_argument("--dry-run", action="store_true", help="Process at most 20 items")
    p_sync.add_argument("--workers", type=int, default=None, help="Parallel detail fetches (overrides EVIDENCE_FETCH_WORKERS)")
    p_sync.add_argument("--detach", action="store_true", help="Run the job in the background and poll for completion")
    p_sync.add_argument("--interval", type=float, default=2.0, help="Polling interval in seconds with --detach")
    p_sync.add_argument("--max-attempts", type=int, default=900, help="Polls before giving up with --detach (the job keeps running)")

    p_job = sub.add_parser("job", help="Inspect jobs")
    p_job.add_argument("action", choices=("status", "list", "stats", "clear-failed"))
    p_job.add_argument("job_id", nargs="?", default=None)
    p_job.add_argument("--wait", action="store_true", help="Poll until the job finishes")
    p_job.add_argument("--interval", type=float, default=2.0)
    p_job.add_argument("--max-attempts", type=int, default=150)
    p_job.add_argument("--limit", type=int, default=20)
    p_job.add_argument("--type", type=str, default=None, help="Filter list by job type (GITHUB_SYNC, JIRA_SYNC)")
    p_job.add_argument("--status", type=str, default=None, help="Filter list by status")

    p_snap = sub.add_parser("snapshot", help="Show or regenerate a monthly snapshot")
    p_snap.add_argument("month", type=str, help="Month as YYYY-MM")
    p_snap.add_argument("--force", action="store_true", help="Regenerate even when the stored snapshot is fresh")

    p_crit = sub.add_parser("criteria", help="Manage the criterion catalog")
    p_crit.add_argument("action", choices=("import", "list"))
    p_crit.add_argument("file", nargs="?", default=None, help="YAML or JSON catalog for import")

    p_cache = sub.add_parser("cache", help="Inspect or manage the HTTP response cache")
    p_cache.add_argument("--cache", type=str, default="", help="Path to SQLite cache file (default: EVIDENCE_CACHE_PATH or cache.db)")
    p_cache.add_argument("--info", action="store_true", help="Show cache statistics")
    p_cache.add_argument("--clear", action="store_true", help="Clear the persistent cache")
    p_cache.add_argument("--list", action="store_true", help="List cache keys")
    p_cache.add_argument("--get", type=str, default="", help="Get a specific cache key value")
    p_cache.add_argument("--remove", type=str, default="", help="Remove a specific cache key")
    p_cache.add_argument("--force", action="store_true", help="Skip confirmation for --clear and --remove")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.config)
        if args.command == "cache":
            return cmd_cache(args, settings)
        with EvidenceStore(args.db or settings.db_path) as store:
            if args.command == "sync":
                return cmd_sync(args, settings, store)
            if args.command == "job":
                return cmd_job(args, store)
            if args.command == "snapshot":
                return cmd_snapshot(args, store)
            return cmd_criteria(args, store)
    except (SyncError, ValueError) as ex:
        print(f"error: {ex}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
