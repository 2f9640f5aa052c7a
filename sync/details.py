"""
Per-item detail fetching with failure isolation and component tagging.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Callable, Tuple

from normalize.models import WorkItemReference, DetailRecord
from scoring.components import extract_components
from sync.errors import PerItemFetchError

logger = logging.getLogger(__name__)


class DetailFetcher:
    """Fetch full records for delta references.

    A failing item is logged and skipped; the others are still returned, in
    input order. ``workers > 1`` fetches through a bounded thread pool.
    """

    def __init__(self, source, log: Optional[Callable[[str], None]] = None, workers: int = 1):
        self.source = source
        self.log = log or logger.info
        self.workers = max(1, int(workers))

    def _fetch_one(self, ref: WorkItemReference) -> Tuple[WorkItemReference, Optional[DetailRecord], Optional[Exception]]:
        try:
            record = self.source.fetch_detail(ref)
        except PerItemFetchError as ex:
            return ref, None, ex
        if record.files:
            record.components = extract_components(record.filenames)
        return ref, record, None

    def fetch(self, refs: List[WorkItemReference], on_item: Optional[Callable[[int, int], None]] = None) -> Tuple[List[DetailRecord], int]:
        """Return (fetched records, number of failed items)."""
        records: List[DetailRecord] = []
        failed = 0
        if self.workers > 1 and len(refs) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                outcomes = pool.map(self._fetch_one, refs)
                for done, outcome in enumerate(outcomes, start=1):
                    failed += self._collect(outcome, records)
                    if on_item:
                        on_item(done, len(refs))
        else:
            for done, ref in enumerate(refs, start=1):
                failed += self._collect(self._fetch_one(ref), records)
                if on_item:
                    on_item(done, len(refs))
        return records, failed

    def _collect(self, outcome, records: List[DetailRecord]) -> int:
        ref, record, error = outcome
        if error is not None:
            self.log(f"Failed to fetch {ref.identifier}: {error}")
            return 1
        records.append(record)
        return 0
