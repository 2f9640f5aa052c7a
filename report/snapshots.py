"""
Monthly snapshots of stored evidence and when to regenerate them.

A snapshot generated before its month ended is provisional. It is stale once
it is more than 24 hours old, so it gets refreshed at most daily while the
month is open. The first generation after the month ended marks it complete,
and a complete snapshot is never regenerated unless forced.
"""

import re
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Tuple, List

from normalize.models import MonthlySnapshot

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=24)
TOP_COMPONENTS = 10
MONTH_RE = re.compile(r'^\d{4}-(0[1-9]|1[0-2])$')


def _utc(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_month(month: str) -> datetime:
    if not month or not MONTH_RE.match(month):
        raise ValueError(f"month must be YYYY-MM, got {month!r}")
    return datetime(int(month[:4]), int(month[5:]), 1, tzinfo=timezone.utc)


def month_end(month: str) -> datetime:
    """First instant after ``month`` (exclusive end)."""
    start = parse_month(month)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def is_snapshot_stale(snapshot: MonthlySnapshot, now: Optional[datetime] = None) -> bool:
    if snapshot.is_complete:
        return False
    now = _utc(now) if now is not None else datetime.now(timezone.utc)
    generated = _utc(snapshot.generated_at)
    return generated < month_end(snapshot.month) and now - generated > STALE_AFTER


def compute_month_metrics(store, month: str) -> Dict[str, Any]:
    """Aggregate stored evidence with occurred_at inside ``month``.

    A PR synced under several roles counts once.
    """
    start = parse_month(month).date().isoformat()
    end = month_end(month).date().isoformat()
    rows = store.evidence_between(start, end)

    seen = set()
    categories: Counter = Counter()
    components: Dict[str, Dict[str, int]] = {}
    metrics = {'totalPrs': 0, 'totalTickets': 0, 'additions': 0, 'deletions': 0, 'totalChanges': 0, 'latestActivity': None}
    for row in rows:
        key = (row['source_system'], row['identifier'])
        if key in seen:
            continue
        seen.add(key)
        categories[row['category'] or 'other'] += 1
        if not metrics['latestActivity'] or (row['occurred_at'] or '') > metrics['latestActivity']:
            metrics['latestActivity'] = row['occurred_at']
        if row['source_system'] != 'github':
            metrics['totalTickets'] += 1
            continue
        changes = (row['additions'] or 0) + (row['deletions'] or 0)
        metrics['totalPrs'] += 1
        metrics['additions'] += row['additions'] or 0
        metrics['deletions'] += row['deletions'] or 0
        metrics['totalChanges'] += changes
        for tag in row['components']:
            entry = components.setdefault(tag.name, {'prCount': 0, 'changes': 0})
            entry['prCount'] += 1
            entry['changes'] += changes

    ranked = sorted(components.items(), key=lambda kv: kv[1]['prCount'], reverse=True)
    metrics['componentsCount'] = len(components)
    metrics['topComponents'] = [dict(name=name, **data) for name, data in ranked[:TOP_COMPONENTS]]
    metrics['categories'] = dict(categories)
    return metrics


def summarize_metrics(month: str, metrics: Dict[str, Any]) -> str:
    if not metrics.get('totalPrs') and not metrics.get('totalTickets'):
        return 'no-activity'
    parts: List[str] = []
    if metrics.get('totalPrs'):
        avg = round(metrics['totalChanges'] / metrics['totalPrs'])
        parts.append(f"{metrics['totalPrs']} PRs merged, {metrics['totalChanges']} lines changed (avg {avg} per PR)")
    if metrics.get('totalTickets'):
        parts.append(f"{metrics['totalTickets']} tickets")
    top = [c['name'] for c in metrics.get('topComponents', [])[:3]]
    if top:
        parts.append(f"most active in {', '.join(top)}")
    return f"{month}: " + '; '.join(parts)


def get_or_generate_snapshot(store, month: str, now: Optional[datetime] = None, force: bool = False) -> Tuple[MonthlySnapshot, bool]:
    """Return (snapshot, regenerated). A fresh or complete snapshot is served as stored."""
    now = _utc(now) if now is not None else datetime.now(timezone.utc)
    if parse_month(month) > now:
        raise ValueError(f"cannot generate a snapshot for future month {month}")

    existing = store.get_snapshot(month)
    if existing is not None and not force and not is_snapshot_stale(existing, now):
        return existing, False

    metrics = compute_month_metrics(store, month)
    snapshot = MonthlySnapshot(month, now >= month_end(month), now.isoformat(), metrics, summarize_metrics(month, metrics))
    logger.info("generated snapshot for %s (complete=%s)", month, snapshot.is_complete)
    return store.save_snapshot(snapshot), True
