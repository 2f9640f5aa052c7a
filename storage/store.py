"""
SQLite evidence store.

Work items are unique on their natural key (source_system, identifier, role)
and each work item owns at most one evidence row. Those two UNIQUE constraints
are the only guard against duplicate evidence when sync jobs race.
Jobs, the criterion catalog and monthly snapshots live in the same database.
"""

import sqlite3
import json
import time
import threading
from contextlib import contextmanager
from typing import Optional, Any, Dict, List, Iterable, Tuple, Set

from normalize.models import DetailRecord, EvidenceRecord, Criterion, MonthlySnapshot, AnalysisResult
from normalize.util import normalize_component_tags

# sqlite's default host-parameter limit is 999
LOOKUP_CHUNK = 500

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS work_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_system TEXT NOT NULL,
    identifier TEXT NOT NULL,
    role TEXT NOT NULL,
    title TEXT,
    body TEXT,
    url TEXT,
    additions INTEGER DEFAULT 0,
    deletions INTEGER DEFAULT 0,
    changed_files INTEGER DEFAULT 0,
    files TEXT,
    components TEXT,
    metadata TEXT,
    author TEXT,
    reviewers TEXT,
    created_at TEXT,
    resolved_at TEXT,
    synced_at REAL,
    UNIQUE (source_system, identifier, role)
);
CREATE INDEX IF NOT EXISTS idx_work_items_identifier ON work_items (source_system, identifier);

CREATE TABLE IF NOT EXISTS evidence (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id INTEGER NOT NULL UNIQUE REFERENCES work_items (id),
    type TEXT NOT NULL,
    summary TEXT,
    category TEXT,
    scope TEXT,
    components TEXT,
    occurred_at TEXT,
    created_at REAL,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS criteria (
    id INTEGER PRIMARY KEY,
    area TEXT,
    subarea TEXT,
    description TEXT
);

CREATE TABLE IF NOT EXISTS evidence_criteria (
    evidence_id INTEGER NOT NULL REFERENCES evidence (id),
    criterion_id INTEGER NOT NULL REFERENCES criteria (id),
    confidence REAL,
    PRIMARY KEY (evidence_id, criterion_id)
);

CREATE TABLE IF NOT EXISTS item_links (
    work_item_id INTEGER NOT NULL REFERENCES work_items (id),
    target_system TEXT NOT NULL,
    target_identifier TEXT NOT NULL,
    created_at REAL,
    PRIMARY KEY (work_item_id, target_system, target_identifier)
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER DEFAULT 0,
    config TEXT,
    logs TEXT,
    result TEXT,
    error TEXT,
    created_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS monthly_snapshots (
    month TEXT PRIMARY KEY,
    is_complete INTEGER NOT NULL DEFAULT 0,
    generated_at TEXT NOT NULL,
    metrics TEXT,
    summary TEXT
);
"""

JOB_COLUMNS = ('id', 'type', 'status', 'progress', 'config', 'logs', 'result', 'error', 'created_at', 'started_at', 'completed_at', 'updated_at')
JOB_JSON_COLUMNS = ('config', 'logs', 'result')


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str], default=None):
    if value is None or value == '':
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _chunks(items: List[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class EvidenceStore:
    def __init__(self, path: Optional[str] = None):
        """Open (and create if needed) the evidence database.

        :param path: SQLite file path, or None for a private in-memory database.
        """
        self.path = path or ':memory:'
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self.conn.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def transaction(self):
        """Serialize access and commit on success, roll back on any error."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    # ------------------------------------------------------------------
    # work items
    # ------------------------------------------------------------------

    # noinspection SqlResolve
    def existing_identifiers(self, source_system: str, identifiers: Iterable[str]) -> Set[str]:
        """Return the subset of ``identifiers`` that already have evidence for ``source_system`` under any role.

        A work item row without evidence (a write that failed part way) does not count.
        """
        wanted = list(dict.fromkeys(identifiers))
        found: Set[str] = set()
        with self._lock:
            for chunk in _chunks(wanted, LOOKUP_CHUNK):
                marks = ','.join('?' * len(chunk))
                rows = self.conn.execute(
                    'SELECT DISTINCT w.identifier FROM work_items w JOIN evidence e ON e.work_item_id = w.id '
                    f'WHERE w.source_system = ? AND w.identifier IN ({marks})',
                    [source_system] + chunk,
                ).fetchall()
                found.update(r['identifier'] for r in rows)
        return found

    @staticmethod
    def _work_item_values(record: DetailRecord) -> Dict[str, Any]:
        return {
            'title': record.title,
            'body': record.body,
            'url': record.url,
            'additions': record.additions,
            'deletions': record.deletions,
            'changed_files': record.changed_files,
            'files': _dumps(record.files),
            'components': _dumps([c.to_dict() for c in normalize_component_tags(record.components)]),
            'metadata': _dumps(record.metadata),
            'author': record.author,
            'reviewers': _dumps(record.reviewers),
            'created_at': record.created_at,
            'resolved_at': record.resolved_at,
            'synced_at': time.time(),
        }

    # noinspection SqlResolve
    def upsert_work_item(self, record: DetailRecord) -> Tuple[int, bool]:
        """Insert or update the row for ``record.natural_key``. Returns (row id, created)."""
        values = self._work_item_values(record)
        key = record.natural_key
        with self.transaction() as conn:
            row = conn.execute(
                'SELECT id FROM work_items WHERE source_system = ? AND identifier = ? AND role = ?', key
            ).fetchone()
            if row is None:
                try:
                    cols = ('source_system', 'identifier', 'role') + tuple(values.keys())
                    cur = conn.execute(
                        f"INSERT INTO work_items ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))})",
                        key + tuple(values.values()),
                    )
                    return cur.lastrowid, True
                except sqlite3.IntegrityError:
                    # another job inserted the same natural key first
                    row = conn.execute(
                        'SELECT id FROM work_items WHERE source_system = ? AND identifier = ? AND role = ?', key
                    ).fetchone()
                    if row is None:
                        raise
            assignments = ', '.join(f'{col} = ?' for col in values.keys())
            conn.execute(f'UPDATE work_items SET {assignments} WHERE id = ?', tuple(values.values()) + (row['id'],))
            return row['id'], False

    # noinspection SqlResolve
    def get_work_item(self, source_system: str, identifier: str, role: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM work_items WHERE source_system = ? AND identifier = ? AND role = ?',
                (source_system, identifier, role),
            ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item['files'] = _loads(item['files'], [])
        item['metadata'] = _loads(item['metadata'], {})
        item['reviewers'] = _loads(item['reviewers'], [])
        item['components'] = normalize_component_tags(item['components'])
        return item

    # noinspection SqlResolve
    def count_work_items(self, source_system: Optional[str] = None) -> int:
        with self._lock:
            if source_system:
                return self.conn.execute('SELECT COUNT(1) FROM work_items WHERE source_system = ?', (source_system,)).fetchone()[0]
            return self.conn.execute('SELECT COUNT(1) FROM work_items').fetchone()[0]

    # ------------------------------------------------------------------
    # evidence
    # ------------------------------------------------------------------

    @staticmethod
    def _evidence_from_row(row, criterion_ids: List[int]) -> EvidenceRecord:
        return EvidenceRecord(row['id'], row['work_item_id'], row['type'], row['summary'], row['category'], row['scope'], row['occurred_at'], criterion_ids)

    # noinspection SqlResolve
    def find_evidence(self, work_item_id: int) -> Optional[EvidenceRecord]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM evidence WHERE work_item_id = ?', (work_item_id,)).fetchone()
            if row is None:
                return None
            return self._evidence_from_row(row, self.criterion_links(row['id']))

    # noinspection SqlResolve
    def insert_evidence(self, work_item_id: int, evidence_type: str, analysis: AnalysisResult, occurred_at: Optional[str], criterion_ids: List[int], confidence: float = 0.8) -> Tuple[int, bool]:
        """Create the evidence row and its criterion links in one transaction.

        Returns (evidence id, created). If a racing job created the row first,
        nothing is written and (existing id, False) is returned.
        """
        now = time.time()
        with self.transaction() as conn:
            try:
                cur = conn.execute(
                    'INSERT INTO evidence (work_item_id, type, summary, category, scope, components, occurred_at, created_at, updated_at) '
                    'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)',
                    (work_item_id, evidence_type, analysis.summary, analysis.category, analysis.scope, _dumps(analysis.component_tags), occurred_at, now, now),
                )
            except sqlite3.IntegrityError:
                row = conn.execute('SELECT id FROM evidence WHERE work_item_id = ?', (work_item_id,)).fetchone()
                if row is None:
                    raise
                return row['id'], False
            evidence_id = cur.lastrowid
            conn.executemany(
                'INSERT OR IGNORE INTO evidence_criteria (evidence_id, criterion_id, confidence) VALUES (?, ?, ?)',
                [(evidence_id, cid, confidence) for cid in criterion_ids],
            )
            return evidence_id, True

    # noinspection SqlResolve
    def update_evidence(self, evidence_id: int, analysis: AnalysisResult, occurred_at: Optional[str]):
        """Refresh the analysis fields only. Criterion links are left as they are."""
        with self.transaction() as conn:
            conn.execute(
                'UPDATE evidence SET summary = ?, category = ?, scope = ?, components = ?, occurred_at = ?, updated_at = ? WHERE id = ?',
                (analysis.summary, analysis.category, analysis.scope, _dumps(analysis.component_tags), occurred_at, time.time(), evidence_id),
            )

    # noinspection SqlResolve
    def criterion_links(self, evidence_id: int) -> List[int]:
        with self._lock:
            rows = self.conn.execute(
                'SELECT criterion_id FROM evidence_criteria WHERE evidence_id = ? ORDER BY criterion_id', (evidence_id,)
            ).fetchall()
        return [r['criterion_id'] for r in rows]

    # noinspection SqlResolve
    def count_evidence(self) -> int:
        with self._lock:
            return self.conn.execute('SELECT COUNT(1) FROM evidence').fetchone()[0]

    # noinspection SqlResolve
    def upsert_item_link(self, work_item_id: int, target_system: str, target_identifier: str) -> bool:
        """Record a cross reference. Returns True if the link is new."""
        with self.transaction() as conn:
            cur = conn.execute(
                'INSERT OR IGNORE INTO item_links (work_item_id, target_system, target_identifier, created_at) VALUES (?, ?, ?, ?)',
                (work_item_id, target_system, target_identifier, time.time()),
            )
            return cur.rowcount > 0

    # noinspection SqlResolve
    def item_links(self, work_item_id: int) -> List[Tuple[str, str]]:
        with self._lock:
            rows = self.conn.execute(
                'SELECT target_system, target_identifier FROM item_links WHERE work_item_id = ? ORDER BY target_identifier', (work_item_id,)
            ).fetchall()
        return [(r['target_system'], r['target_identifier']) for r in rows]

    # noinspection SqlResolve
    def evidence_between(self, start: str, end: str, source_system: Optional[str] = None) -> List[Dict[str, Any]]:
        """Evidence joined with its work item, for occurred_at in [start, end)."""
        sql = (
            'SELECT e.id, e.type, e.summary, e.category, e.scope, e.occurred_at, '
            'w.source_system, w.identifier, w.role, w.additions, w.deletions, w.components '
            'FROM evidence e JOIN work_items w ON w.id = e.work_item_id '
            'WHERE e.occurred_at >= ? AND e.occurred_at < ?'
        )
        params: List[Any] = [start, end]
        if source_system:
            sql += ' AND w.source_system = ?'
            params.append(source_system)
        with self._lock:
            rows = self.conn.execute(sql + ' ORDER BY e.occurred_at, e.id', params).fetchall()
        items = []
        for r in rows:
            item = dict(r)
            item['components'] = normalize_component_tags(item['components'])
            items.append(item)
        return items

    # ------------------------------------------------------------------
    # criteria
    # ------------------------------------------------------------------

    # noinspection SqlResolve
    def save_criteria(self, criteria: Iterable[Criterion]) -> int:
        rows = [(c.id, c.area, c.subarea, c.description) for c in criteria]
        with self.transaction() as conn:
            conn.executemany(
                'INSERT INTO criteria (id, area, subarea, description) VALUES (?, ?, ?, ?) '
                'ON CONFLICT (id) DO UPDATE SET area = excluded.area, subarea = excluded.subarea, description = excluded.description',
                rows,
            )
        return len(rows)

    # noinspection SqlResolve
    def list_criteria(self) -> List[Criterion]:
        with self._lock:
            rows = self.conn.execute('SELECT id, area, subarea, description FROM criteria ORDER BY id').fetchall()
        return [Criterion(r['id'], r['area'] or '', r['subarea'] or '', r['description'] or '') for r in rows]

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    # noinspection SqlResolve
    def insert_job(self, job: Dict[str, Any]):
        values = [_dumps(job.get(c)) if c in JOB_JSON_COLUMNS else job.get(c) for c in JOB_COLUMNS]
        with self.transaction() as conn:
            conn.execute(f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({', '.join('?' * len(JOB_COLUMNS))})", values)

    # noinspection SqlResolve
    def update_job(self, job_id: str, fields: Dict[str, Any]):
        cols = [c for c in fields.keys() if c in JOB_COLUMNS and c != 'id']
        if not cols:
            return
        values = [_dumps(fields[c]) if c in JOB_JSON_COLUMNS else fields[c] for c in cols]
        with self.transaction() as conn:
            conn.execute(f"UPDATE jobs SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?", values + [job_id])

    @staticmethod
    def _job_from_row(row) -> Dict[str, Any]:
        job = dict(row)
        job['config'] = _loads(job['config'], {})
        job['logs'] = _loads(job['logs'], [])
        job['result'] = _loads(job['result'])
        return job

    # noinspection SqlResolve
    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM jobs WHERE id = ?', (job_id,)).fetchone()
        return self._job_from_row(row) if row else None

    # noinspection SqlResolve
    def list_jobs(self, limit: int = 50, job_type: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = 'SELECT * FROM jobs WHERE 1 = 1'
        params: List[Any] = []
        if job_type:
            sql += ' AND type = ?'
            params.append(job_type)
        if status:
            sql += ' AND status = ?'
            params.append(status)
        with self._lock:
            rows = self.conn.execute(sql + ' ORDER BY created_at DESC LIMIT ?', params + [limit]).fetchall()
        return [self._job_from_row(r) for r in rows]

    # noinspection SqlResolve
    def job_stats(self) -> Dict[str, int]:
        with self._lock:
            rows = self.conn.execute('SELECT status, COUNT(1) AS n FROM jobs GROUP BY status').fetchall()
        stats = {r['status']: r['n'] for r in rows}
        stats['total'] = sum(stats.values())
        return stats

    # noinspection SqlResolve
    def clear_failed_jobs(self) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM jobs WHERE status = 'FAILED'").rowcount

    # ------------------------------------------------------------------
    # monthly snapshots
    # ------------------------------------------------------------------

    # noinspection SqlResolve
    def get_snapshot(self, month: str) -> Optional[MonthlySnapshot]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM monthly_snapshots WHERE month = ?', (month,)).fetchone()
        if row is None:
            return None
        return MonthlySnapshot(row['month'], bool(row['is_complete']), row['generated_at'], _loads(row['metrics'], {}), row['summary'] or '')

    # noinspection SqlResolve
    def save_snapshot(self, snapshot: MonthlySnapshot) -> MonthlySnapshot:
        """Upsert a snapshot. A stored is_complete=1 is never cleared."""
        with self.transaction() as conn:
            conn.execute(
                'INSERT INTO monthly_snapshots (month, is_complete, generated_at, metrics, summary) VALUES (?, ?, ?, ?, ?) '
                'ON CONFLICT (month) DO UPDATE SET is_complete = MAX(monthly_snapshots.is_complete, excluded.is_complete), '
                'generated_at = excluded.generated_at, metrics = excluded.metrics, summary = excluded.summary',
                (snapshot.month, int(snapshot.is_complete), snapshot.generated_at, _dumps(snapshot.metrics), snapshot.summary),
            )
        return self.get_snapshot(snapshot.month)


__all__ = ["EvidenceStore"]
