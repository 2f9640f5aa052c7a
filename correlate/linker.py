"""
Linker heuristics to associate pull requests with Jira issues.
Dependency-free: an explicit issue key in the PR title or body is the only signal.
"""
import re
from typing import List, Optional

DEFAULT_KEY_PATTERN = r"\b[A-Z][A-Z0-9]+-\d+\b"


def find_issue_keys_in_text(text: str, key_pattern: Optional[str] = None) -> List[str]:
    """Return the distinct issue keys found in ``text`` in order of first appearance."""
    if not text:
        return []
    pattern = re.compile(key_pattern or DEFAULT_KEY_PATTERN)
    return list(dict.fromkeys(m.group(0) for m in pattern.finditer(text)))


def cross_references(record) -> List[str]:
    """Issue keys a detail record refers to."""
    keys = list(dict.fromkeys(record.cross_references or []))
    if record.source_system == 'jira':
        # a ticket never links to itself
        keys = [k for k in keys if k != record.identifier]
    return keys
