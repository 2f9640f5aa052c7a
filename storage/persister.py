"""
Write detail records and their analyses to the evidence store.

Re-running over the same records converges: the work item row is matched
on its natural key, the evidence row on its work item, and criterion links
are only written when the evidence row is first created.
"""

import sqlite3
import logging
from typing import List, Dict, Optional, Callable

from correlate import cross_references
from normalize.models import DetailRecord, AnalysisResult
from sync.errors import PersistenceError

logger = logging.getLogger(__name__)

EVIDENCE_TYPES = {'github': 'GITHUB_PR', 'jira': 'JIRA'}
LINK_TARGETS = {'github': 'jira'}
CRITERION_CONFIDENCE = 0.8


class Persister:
    def __init__(self, store, log: Optional[Callable[[str], None]] = None):
        self.store = store
        self.log = log or logger.info

    def persist(self, record: DetailRecord, analysis: AnalysisResult) -> Dict[str, int]:
        """Upsert one record; returns ``{'created': 0|1, 'updated': 0|1, 'linked': n}``."""
        if analysis.identifier != record.identifier:
            raise ValueError(f"analysis for {analysis.identifier} does not belong to {record.identifier}")
        try:
            work_item_id, _ = self.store.upsert_work_item(record)
            existing = self.store.find_evidence(work_item_id)
            created = False
            if existing is None:
                evidence_id, created = self.store.insert_evidence(
                    work_item_id, EVIDENCE_TYPES.get(record.source_system, record.source_system.upper()),
                    analysis, record.occurred_at, analysis.criterion_ids, CRITERION_CONFIDENCE,
                )
                if not created:
                    # lost the insert race to another job
                    self.store.update_evidence(evidence_id, analysis, record.occurred_at)
            else:
                self.store.update_evidence(existing.id, analysis, record.occurred_at)

            linked = 0
            target = LINK_TARGETS.get(record.source_system)
            if target:
                for key in cross_references(record):
                    if self.store.upsert_item_link(work_item_id, target, key):
                        linked += 1
        except sqlite3.Error as ex:
            raise PersistenceError(f"could not store {record.identifier}: {ex}") from ex

        return {'created': int(created), 'updated': int(not created), 'linked': linked}

    def persist_all(self, records: List[DetailRecord], analyses: List[AnalysisResult], on_item: Optional[Callable[[int, int], None]] = None, counts: Optional[Dict[str, int]] = None) -> Dict[str, int]:
        """Persist records with their position-aligned analyses.

        ``counts`` is updated in place as items are written, so a caller
        still holds the partial totals if a write fails part way.
        """
        if len(records) != len(analyses):
            raise ValueError(f"{len(records)} records but {len(analyses)} analyses")
        counts = counts if counts is not None else {}
        for key in ('processed', 'created', 'updated', 'linked'):
            counts.setdefault(key, 0)
        for index, (record, analysis) in enumerate(zip(records, analyses), start=1):
            outcome = self.persist(record, analysis)
            counts['processed'] += 1
            counts['created'] += outcome['created']
            counts['updated'] += outcome['updated']
            counts['linked'] += outcome['linked']
            if on_item:
                on_item(index, len(records))
        self.log(f"Stored {counts['processed']} items ({counts['created']} new, {counts['updated']} updated, {counts['linked']} links)")
        return counts
