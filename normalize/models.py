"""
Unified data models for work items, analyses and persisted evidence.
"""

from typing import List, Optional, Dict, Any

CATEGORIES = ('feature', 'bug', 'refactor', 'devex', 'docs', 'test', 'other')
SCOPES = ('small', 'medium', 'large')
MAX_CRITERIA_PER_ITEM = 3


class WorkItemReference:
    """
    Lightweight search hit. Only the identifier takes part in de-duplication;
    the facet records which query found it first.
    """
    def __init__(self, source_system: str, identifier: str, title: str, facet: str):
        self.source_system = source_system  # github/jira
        self.identifier = identifier  # "owner/repo#123" or "PROJ-123"
        self.title = title
        self.facet = facet  # author/reviewer/assignee/reporter

    def __repr__(self):
        return f"WorkItemReference({self.source_system}:{self.identifier} via {self.facet})"


class ComponentTag:
    """
    A ranked subsystem tag derived from changed file paths.
    """
    def __init__(self, name: str, count: int, depth: int):
        self.name = name
        self.count = count
        self.depth = depth

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'count': self.count, 'depth': self.depth}

    def __eq__(self, other):
        if not isinstance(other, ComponentTag):
            return NotImplemented
        return (self.name, self.count, self.depth) == (other.name, other.count, other.depth)

    def __repr__(self):
        return f"ComponentTag({self.name!r}, count={self.count}, depth={self.depth})"


class DetailRecord:
    """
    Full record for one delta reference: diff stats, participants, timestamps.
    Jira tickets carry no file list, so their components are always empty.
    """
    def __init__(
        self,
        source_system: str,
        identifier: str,
        role: str,
        title: str,
        body: str = '',
        url: Optional[str] = None,
        additions: int = 0,
        deletions: int = 0,
        changed_files: int = 0,
        files: Optional[List[Dict[str, Any]]] = None,
        created_at: Optional[str] = None,
        resolved_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        author: Optional[str] = None,
        reviewers: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cross_references: Optional[List[str]] = None,
        components: Optional[List[ComponentTag]] = None,
    ):
        self.source_system = source_system
        self.identifier = identifier
        self.role = role
        self.title = title
        self.body = body or ''
        self.url = url
        self.additions = additions
        self.deletions = deletions
        self.changed_files = changed_files
        self.files = files or []
        self.created_at = created_at
        self.resolved_at = resolved_at
        self.updated_at = updated_at
        self.author = author
        self.reviewers = reviewers or []
        self.metadata = metadata or {}  # e.g. {'issue_type': 'Bug', 'story_points': 3, 'epic_key': ...}
        self.cross_references = cross_references or []  # ticket keys found in title/body
        self.components = components or []

    @property
    def natural_key(self):
        return (self.source_system, self.identifier, self.role)

    @property
    def filenames(self) -> List[str]:
        return [f.get('filename') for f in self.files if f.get('filename')]

    @property
    def occurred_at(self) -> Optional[str]:
        return self.resolved_at or self.updated_at or self.created_at


class AnalysisResult:
    """
    Classification for one DetailRecord, at the same ordinal position as its input.
    """
    def __init__(self, identifier: str, summary: str, category: str, scope: str, component_tags: Optional[List[str]] = None, criterion_ids: Optional[List[int]] = None):
        self.identifier = identifier
        self.summary = summary
        self.category = category
        self.scope = scope
        self.component_tags = component_tags or []  # PRs only
        self.criterion_ids = criterion_ids or []

    @classmethod
    def fallback(cls, record: DetailRecord) -> 'AnalysisResult':
        """Neutral analysis used when the classifier response cannot be trusted."""
        return cls(record.identifier, record.title, 'other', 'medium', [], [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'summary': self.summary,
            'category': self.category,
            'scope': self.scope,
            'component_tags': list(self.component_tags),
            'criterion_ids': list(self.criterion_ids),
        }


class Criterion:
    """
    Catalog entry an analysis may link evidence to.
    """
    def __init__(self, criterion_id: int, area: str, subarea: str, description: str):
        self.id = criterion_id
        self.area = area
        self.subarea = subarea
        self.description = description

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'area': self.area, 'subarea': self.subarea, 'description': self.description}


class EvidenceRecord:
    """
    Persisted fusion of a work item and its latest analysis.
    """
    def __init__(self, evidence_id: int, work_item_id: int, evidence_type: str, summary: str, category: str, scope: str, occurred_at: Optional[str], criterion_ids: Optional[List[int]] = None):
        self.id = evidence_id
        self.work_item_id = work_item_id
        self.type = evidence_type  # GITHUB_PR/JIRA
        self.summary = summary
        self.category = category
        self.scope = scope
        self.occurred_at = occurred_at
        self.criterion_ids = criterion_ids or []


class MonthlySnapshot:
    """
    Derived per-month metrics. is_complete only ever goes from False to True.
    """
    def __init__(self, month: str, is_complete: bool, generated_at: str, metrics: Optional[Dict[str, Any]] = None, summary: str = ''):
        self.month = month  # YYYY-MM
        self.is_complete = bool(is_complete)
        self.generated_at = generated_at
        self.metrics = metrics or {}
        self.summary = summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'isComplete': self.is_complete,
            'generatedAt': self.generated_at,
            'metrics': self.metrics,
            'summary': self.summary,
        }
