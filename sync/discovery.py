"""
Discovery and delta filtering.

Discovery pages through every (facet, scope) query and merges the hits by
identifier, first occurrence wins. In dry-run mode the merged set is capped
and paging stops as soon as the cap is reached. The delta filter then drops
everything the store already holds, using one batched lookup.
"""

import logging
from collections import OrderedDict
from typing import List, Optional, Callable, Tuple

from normalize.models import WorkItemReference

logger = logging.getLogger(__name__)


class Discoverer:
    def __init__(self, source, log: Optional[Callable[[str], None]] = None):
        self.source = source
        self.log = log or logger.info

    def discover(self, request, limit: Optional[int] = None) -> List[WorkItemReference]:
        """All distinct references matching ``request``, in first-seen order, at most ``limit``."""
        merged: 'OrderedDict[str, WorkItemReference]' = OrderedDict()
        for facet, query in self.source.queries(request):
            if limit is not None and len(merged) >= limit:
                break
            found = 0
            cursor = None
            while True:
                refs, cursor = self.source.search_page(facet, query, cursor)
                for ref in refs:
                    found += 1
                    if ref.identifier not in merged:
                        merged[ref.identifier] = ref
                    if limit is not None and len(merged) >= limit:
                        break
                if cursor is None or (limit is not None and len(merged) >= limit):
                    break
            self.log(f"Query [{facet}] {query}: {found} results")

        refs = list(merged.values())
        if limit is not None and len(refs) >= limit:
            self.log(f"Dry run: limited to {limit} items")
        return refs


class DeltaFilter:
    def __init__(self, store, log: Optional[Callable[[str], None]] = None):
        self.store = store
        self.log = log or logger.info

    def filter(self, source_system: str, refs: List[WorkItemReference], update_existing: bool = False, limit: Optional[int] = None) -> Tuple[List[WorkItemReference], int]:
        """Return (references to process, number skipped as already stored)."""
        existing = self.store.existing_identifiers(source_system, [r.identifier for r in refs])
        if update_existing:
            delta = list(refs)
            if existing:
                self.log(f"Updating {len(existing)} existing items")
        else:
            delta = [r for r in refs if r.identifier not in existing]
            self.log(f"{len(existing)} already synced, {len(delta)} new")
        if limit is not None:
            delta = delta[:limit]
        skipped = 0 if update_existing else len(existing)
        return delta, skipped
