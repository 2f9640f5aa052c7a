"""
Batched AI classification of detail records.

Records are sent in fixed-size batches together with the criterion catalog;
the reply must be a JSON array aligned 1:1 with the request. On a rate limit
the request is retried after (attempt + 1) * 30 seconds with fewer items per
request and shorter per-item text. Items already classified are kept, so a
retry only re-sends what is still pending.
"""
import json
import time
import logging
from typing import List, Dict, Any, Callable, Optional, Iterable

from normalize.models import DetailRecord, AnalysisResult, Criterion, CATEGORIES, SCOPES, MAX_CRITERIA_PER_ITEM
from sync.errors import RateLimitError, ClassificationParseError

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
MAX_RETRIES = 3
BACKOFF_STEP_SECONDS = 30.0
BATCH_SHRINK_STEP = 2
MIN_BATCH_ITEMS = 1
TEXT_CHARS = {'github': 300, 'jira': 500}
TEXT_SHRINK_STEP = 100
MIN_TEXT_CHARS = 100
MAX_FILES_PER_ITEM = 10
MAX_COMPONENT_TAGS = 5
CRITERION_DESCRIPTION_CHARS = 100

PR_INSTRUCTIONS = """Analyze these GitHub pull requests and for each one provide:
1. A concise summary (1-2 sentences) of the work accomplished
2. Category: feature, bug, refactor, devex (developer experience), docs, test, or other
3. Scope based on changes: small (< 50 lines), medium (50-200 lines), large (> 200 lines)
4. Components/areas affected based on file paths
5. Up to 3 most relevant performance criteria IDs from the list below"""

TICKET_INSTRUCTIONS = """Analyze these Jira tickets and for each one provide:
1. A concise summary (1-2 sentences) of the work accomplished
2. Category: feature, bug, refactor, devex, docs, test, or other
3. Scope: small (< 1 day), medium (1-3 days), large (> 3 days)
4. Up to 3 most relevant performance criteria IDs from the list below"""

RESPONSE_FORMAT = """Respond with JSON only, no prose, in exactly this shape:
{"analyses": [{"ref": "<ref of the item>", "summary": "...", "category": "...", "scope": "...", %s"criterionIds": [1, 2]}]}
Return one analysis per item, in the same order as the items."""


def _truncate(text: str, limit: int) -> str:
    text = text or ''
    return text if len(text) <= limit else text[:limit]


def summarize_record(record: DetailRecord, text_chars: int) -> Dict[str, Any]:
    """Compact, prompt-sized view of a record."""
    if record.source_system == 'github':
        return {
            'ref': record.identifier,
            'title': record.title,
            'body': _truncate(record.body, text_chars),
            'additions': record.additions,
            'deletions': record.deletions,
            'changedFiles': record.changed_files,
            'files': record.filenames[:MAX_FILES_PER_ITEM],
            'role': record.role,
        }
    meta = record.metadata
    return {
        'ref': record.identifier,
        'title': record.title,
        'type': meta.get('issue_type'),
        'status': meta.get('status'),
        'description': _truncate(record.body, text_chars),
        'storyPoints': meta.get('story_points'),
        'durationDays': meta.get('duration_days'),
    }


def criteria_reference(criteria: Iterable[Criterion]) -> str:
    lines = []
    for c in criteria:
        desc = c.description or ''
        if len(desc) > CRITERION_DESCRIPTION_CHARS:
            desc = desc[:CRITERION_DESCRIPTION_CHARS] + '...'
        lines.append(f"[{c.id}] {c.area} > {c.subarea}: {desc}")
    return '\n'.join(lines)


def build_prompt(records: List[DetailRecord], criteria: List[Criterion], text_chars: int, user_context: str = '') -> str:
    is_pr = bool(records) and records[0].source_system == 'github'
    heading = 'PULL REQUESTS' if is_pr else 'TICKETS'
    instructions = PR_INSTRUCTIONS if is_pr else TICKET_INSTRUCTIONS
    fmt = RESPONSE_FORMAT % ('"components": ["..."], ' if is_pr else '')
    items = json.dumps([summarize_record(r, text_chars) for r in records], indent=2)
    context = f"Context about the engineer: {user_context}\n\n" if user_context else ''
    return f"{context}{instructions}\n\n{heading}:\n{items}\n\nPERFORMANCE CRITERIA:\n{criteria_reference(criteria)}\n\n{fmt}"


def _extract_json(text: str) -> Any:
    """Parse the JSON object in a reply, tolerating code fences or stray prose around it."""
    if not text or not text.strip():
        raise ClassificationParseError("empty classification response")
    try:
        return json.loads(text)
    except ValueError:
        pass
    start, end = text.find('{'), text.rfind('}')
    if start < 0 or end <= start:
        raise ClassificationParseError("no JSON object in classification response")
    try:
        return json.loads(text[start:end + 1])
    except ValueError as ex:
        raise ClassificationParseError(f"invalid JSON in classification response: {ex}") from ex


def _criterion_ids(raw: Any, catalog_ids: set) -> List[int]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ClassificationParseError("criterionIds is not a list")
    ids: List[int] = []
    for value in raw:
        try:
            cid = int(value)
        except (TypeError, ValueError):
            continue
        # unknown ids are dropped rather than failing the whole entry
        if cid in catalog_ids and cid not in ids:
            ids.append(cid)
    return ids[:MAX_CRITERIA_PER_ITEM]


def validate_entry(entry: Any, record: DetailRecord, catalog_ids: set) -> AnalysisResult:
    """Turn one reply entry into an AnalysisResult or raise ClassificationParseError."""
    if not isinstance(entry, dict):
        raise ClassificationParseError(f"{record.identifier}: analysis entry is not an object")
    ref = entry.get('ref') or entry.get('key')
    if ref is not None and str(ref) != record.identifier:
        raise ClassificationParseError(f"{record.identifier}: analysis is for {ref}, reply is misaligned")
    category = str(entry.get('category') or '').lower()
    scope = str(entry.get('scope') or '').lower()
    if category not in CATEGORIES:
        raise ClassificationParseError(f"{record.identifier}: unknown category {category!r}")
    if scope not in SCOPES:
        raise ClassificationParseError(f"{record.identifier}: unknown scope {scope!r}")
    summary = entry.get('summary')
    if not isinstance(summary, str) or not summary.strip():
        raise ClassificationParseError(f"{record.identifier}: missing summary")

    raw_ids = entry.get('criterionIds', entry.get('criteriaIds'))
    components: List[str] = []
    if record.source_system == 'github':
        raw_components = entry.get('components')
        if isinstance(raw_components, list):
            components = [c for c in raw_components if isinstance(c, str) and c][:MAX_COMPONENT_TAGS]
        if not components:
            components = [c.name for c in record.components[:MAX_COMPONENT_TAGS]]
    return AnalysisResult(record.identifier, summary.strip(), category, scope, components, _criterion_ids(raw_ids, catalog_ids))


class BatchAnalyzer:
    """Classify detail records in batches against a criterion catalog."""

    def __init__(
        self,
        client,
        criteria: List[Criterion],
        batch_size: int = BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        backoff_step: float = BACKOFF_STEP_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        log: Optional[Callable[[str], None]] = None,
        user_context: str = '',
    ):
        self.client = client
        self.criteria = list(criteria)
        self.catalog_ids = {c.id for c in self.criteria}
        self.batch_size = max(1, int(batch_size))
        self.max_retries = int(max_retries)
        self.backoff_step = float(backoff_step)
        self.sleep = sleep
        self.log = log or logger.info
        self.user_context = user_context

    def partition(self, records: List[DetailRecord]) -> List[List[DetailRecord]]:
        return [records[i:i + self.batch_size] for i in range(0, len(records), self.batch_size)]

    def analyze(self, records: List[DetailRecord], on_batch: Optional[Callable[[int, int], None]] = None) -> List[AnalysisResult]:
        """Classify every record; the result list is aligned with ``records``.

        ``on_batch(done, total)`` is called after each batch. A rate limit that
        outlasts the retries raises RateLimitError.
        """
        results: List[AnalysisResult] = []
        batches = self.partition(records)
        for index, batch in enumerate(batches, start=1):
            self.log(f"Analyzing batch {index}/{len(batches)} ({len(batch)} items)...")
            results.extend(self.analyze_batch(batch))
            if on_batch:
                on_batch(len(results), len(records))
        return results

    def analyze_batch(self, batch: List[DetailRecord]) -> List[AnalysisResult]:
        if not batch:
            return []
        attempt = 0
        batch_size = len(batch)
        truncation = TEXT_CHARS.get(batch[0].source_system, MIN_TEXT_CHARS)
        pending = list(batch)
        results: List[AnalysisResult] = []

        while pending:
            chunk = pending[:batch_size]
            try:
                results.extend(self._classify(chunk, truncation))
            except RateLimitError as exc:
                if attempt >= self.max_retries:
                    raise RateLimitError(
                        f"classification rate limited after {attempt} retries: {exc}", status=exc.status, retry_after=exc.retry_after
                    ) from exc
                wait = (attempt + 1) * self.backoff_step
                attempt += 1
                batch_size = max(MIN_BATCH_ITEMS, batch_size - BATCH_SHRINK_STEP)
                truncation = max(MIN_TEXT_CHARS, truncation - TEXT_SHRINK_STEP)
                self.log(
                    f"Rate limit hit. Waiting {wait:.0f} seconds before retry {attempt}/{self.max_retries} "
                    f"({batch_size} items per request, {truncation} chars of text each)"
                )
                self.sleep(wait)
                continue
            pending = pending[len(chunk):]
        return results

    def _classify(self, chunk: List[DetailRecord], truncation: int) -> List[AnalysisResult]:
        prompt = build_prompt(chunk, self.criteria, truncation, self.user_context)
        reply = self.client.complete(prompt)
        try:
            entries = self._entries(reply, len(chunk))
        except ClassificationParseError as exc:
            self.log(f"Could not parse analysis for {len(chunk)} items, using defaults: {exc}")
            return [AnalysisResult.fallback(r) for r in chunk]

        analyses: List[AnalysisResult] = []
        for entry, record in zip(entries, chunk):
            try:
                analyses.append(validate_entry(entry, record, self.catalog_ids))
            except ClassificationParseError as exc:
                self.log(f"Invalid analysis, using default: {exc}")
                analyses.append(AnalysisResult.fallback(record))
        return analyses

    @staticmethod
    def _entries(reply: str, expected: int) -> List[Any]:
        parsed = _extract_json(reply)
        entries = parsed.get('analyses') if isinstance(parsed, dict) else parsed
        if not isinstance(entries, list):
            raise ClassificationParseError("response has no analyses array")
        if len(entries) != expected:
            raise ClassificationParseError(f"expected {expected} analyses, got {len(entries)}")
        return entries
