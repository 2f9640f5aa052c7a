"""
Normalization utility helpers.
Turn raw GitHub/Jira payloads into normalize.models entities, and coerce
stored component tag lists into one typed shape.
"""
import json
from datetime import datetime
from typing import Dict, Any, List, Optional
from normalize.models import DetailRecord, ComponentTag, WorkItemReference
from correlate.linker import find_issue_keys_in_text

STORY_POINTS_FIELDS = ('customfield_10028', 'customfield_10016')


def adf_to_text(node: Any) -> str:
    """Flatten an Atlassian Document Format node (or plain string) into text."""
    if node is None:
        return ''
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return ''.join(adf_to_text(n) for n in node)
    if not isinstance(node, dict):
        return str(node)
    node_type = node.get('type')
    if node_type == 'text':
        return node.get('text', '')
    if node_type == 'hardBreak':
        return '\n'
    if node_type in ('mention', 'emoji'):
        return (node.get('attrs') or {}).get('text', '')
    inner = adf_to_text(node.get('content') or [])
    if node_type in ('paragraph', 'heading', 'listItem', 'codeBlock', 'blockquote'):
        return inner + '\n'
    return inner


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        # Jira uses +0000 offsets without a colon
        try:
            return datetime.strptime(value, '%Y-%m-%dT%H:%M:%S.%f%z')
        except ValueError:
            return None


def duration_days(created: Optional[str], resolved: Optional[str]) -> Optional[int]:
    start, end = _parse_ts(created), _parse_ts(resolved)
    if not start or not end:
        return None
    return round((end - start).total_seconds() / 86400)


def pr_detail_from_payload(ref: WorkItemReference, pr: Dict[str, Any], files: List[Dict[str, Any]], reviews: List[Dict[str, Any]]) -> DetailRecord:
    """Build a DetailRecord from a GitHub pull request plus its file and review listings."""
    reviewers: List[str] = []
    for review in reviews or []:
        login = (review.get('user') or {}).get('login')
        if login and login not in reviewers:
            reviewers.append(login)

    title = pr.get('title') or ref.title or ''
    body = pr.get('body') or ''
    return DetailRecord(
        source_system='github',
        identifier=ref.identifier,
        role=ref.facet,
        title=title,
        body=body,
        url=pr.get('html_url'),
        additions=int(pr.get('additions') or 0),
        deletions=int(pr.get('deletions') or 0),
        changed_files=int(pr.get('changed_files') or len(files or [])),
        files=[
            {'filename': f.get('filename'), 'additions': int(f.get('additions') or 0), 'deletions': int(f.get('deletions') or 0)}
            for f in files or [] if f.get('filename')
        ],
        created_at=pr.get('created_at'),
        resolved_at=pr.get('merged_at'),
        updated_at=pr.get('updated_at'),
        author=(pr.get('user') or {}).get('login') or 'unknown',
        reviewers=reviewers,
        metadata={'state': pr.get('state'), 'merged': bool(pr.get('merged'))},
        cross_references=find_issue_keys_in_text(f"{title} {body}"),
    )


def _name_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get('name') or value.get('displayName')
    return value


def ticket_detail_from_payload(ref: WorkItemReference, issue: Dict[str, Any]) -> DetailRecord:
    """Build a DetailRecord from a Jira issue payload."""
    fields = issue.get('fields') or {}
    parent = fields.get('parent') or {}
    created = fields.get('created')
    resolved = fields.get('resolutiondate')
    story_points = next((fields.get(f) for f in STORY_POINTS_FIELDS if fields.get(f) is not None), None)
    comments = ((fields.get('comment') or {}).get('comments')) or []

    return DetailRecord(
        source_system='jira',
        identifier=issue.get('key') or ref.identifier,
        role=ref.facet,
        title=fields.get('summary') or ref.title or '',
        body=adf_to_text(fields.get('description')).strip(),
        url=issue.get('self'),
        created_at=created,
        resolved_at=resolved,
        updated_at=fields.get('updated'),
        author=_name_of(fields.get('assignee')),
        reviewers=[],
        metadata={
            'status': _name_of(fields.get('status')),
            'issue_type': _name_of(fields.get('issuetype')),
            'priority': _name_of(fields.get('priority')),
            'story_points': story_points,
            'duration_days': duration_days(created, resolved),
            'epic_key': parent.get('key'),
            'epic_summary': (parent.get('fields') or {}).get('summary'),
            'reporter': _name_of(fields.get('reporter')),
            'comment_count': len(comments),
        },
    )


def normalize_component_tags(raw: Any) -> List[ComponentTag]:
    """Coerce a stored component list into ComponentTag objects.

    Older rows hold bare path strings; newer rows hold {name, count, depth}
    objects. Either may arrive as a JSON string.
    """
    if raw is None or raw == '':
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return [ComponentTag(raw, 1, raw.count('/') + 1)]
    if not isinstance(raw, list):
        return []
    tags: List[ComponentTag] = []
    for entry in raw:
        if isinstance(entry, ComponentTag):
            tags.append(entry)
        elif isinstance(entry, str) and entry:
            tags.append(ComponentTag(entry, 1, entry.count('/') + 1))
        elif isinstance(entry, dict) and (entry.get('name') or entry.get('path')):
            name = entry.get('name') or entry.get('path')
            tags.append(ComponentTag(name, int(entry.get('count') or 1), int(entry.get('depth') or name.count('/') + 1)))
    return tags
