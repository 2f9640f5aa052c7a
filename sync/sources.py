"""
Source adapters: turn a sync request into search queries, page through them
and fetch full records. One adapter per reference source.
"""

import logging
from typing import List, Optional, Tuple, Any, Iterator

from ingest.github import GitHubClient, build_search_query, split_identifier, SEARCH_PAGE_SIZE
from ingest.jira import JiraClient, build_jql
from normalize.models import WorkItemReference, DetailRecord
from normalize.util import pr_detail_from_payload, ticket_detail_from_payload
from sync.errors import SourceError, PerItemFetchError

logger = logging.getLogger(__name__)

# GitHub search returns at most 1000 results per query
MAX_SEARCH_PAGES = 1000 // SEARCH_PAGE_SIZE


def _repo_from_url(repository_url: str) -> str:
    # https://api.github.com/repos/{owner}/{repo}
    parts = (repository_url or '').rstrip('/').split('/')
    return '/'.join(parts[-2:]) if len(parts) >= 2 else ''


class GitHubSource:
    source_system = 'github'
    facets = ('author', 'reviewer')

    def __init__(self, client: GitHubClient, username: Optional[str] = None):
        self.client = client
        self._username = username

    @property
    def username(self) -> str:
        if not self._username:
            self._username = self.client.authenticated_login()
            if not self._username:
                raise SourceError("could not determine the GitHub user to sync")
        return self._username

    def queries(self, request) -> Iterator[Tuple[str, str]]:
        """(facet, query) pairs: one per facet and repository, or one unscoped query per facet."""
        scopes = request.scopes or [None]
        for facet in self.facets:
            for repo in scopes:
                yield facet, build_search_query(self.username, facet, request.start_date, request.end_date, repo)

    def search_page(self, facet: str, query: str, cursor: Optional[int]) -> Tuple[List[WorkItemReference], Optional[int]]:
        page = cursor or 1
        data = self.client.search_pull_requests(query, page=page, per_page=SEARCH_PAGE_SIZE)
        items = data.get('items') or []
        refs = []
        for item in items:
            repo = _repo_from_url(item.get('repository_url'))
            if not repo or item.get('number') is None:
                continue
            refs.append(WorkItemReference('github', f"{repo}#{item['number']}", item.get('title') or '', facet))
        total = int(data.get('total_count') or 0)
        done = len(items) < SEARCH_PAGE_SIZE or page * SEARCH_PAGE_SIZE >= total or page >= MAX_SEARCH_PAGES
        return refs, None if done else page + 1

    def fetch_detail(self, ref: WorkItemReference) -> DetailRecord:
        try:
            repo, number = split_identifier(ref.identifier)
            pr = self.client.get_pull_request(repo, number)
            files = self.client.list_files(repo, number)
            reviews = self.client.list_reviews(repo, number)
        except (SourceError, ValueError) as ex:
            raise PerItemFetchError(ref.identifier, str(ex), getattr(ex, 'status', 0)) from ex
        if not isinstance(pr, dict):
            raise PerItemFetchError(ref.identifier, "pull request payload is not an object")
        return pr_detail_from_payload(ref, pr, files, reviews)


class JiraSource:
    source_system = 'jira'

    def __init__(self, client: JiraClient, email: str, include_reporter: bool = False):
        self.client = client
        self.email = email
        self.facets = ('assignee', 'reporter') if include_reporter else ('assignee',)
        self._resolved = set()

    def queries(self, request) -> Iterator[Tuple[str, str]]:
        for facet in self.facets:
            yield facet, build_jql(self.email, request.scopes, facet, request.start_date, request.end_date)

    def search_page(self, facet: str, query: str, cursor: Optional[str]) -> Tuple[List[WorkItemReference], Optional[str]]:
        data = self.client.search(query, next_page_token=cursor)
        refs = []
        for issue in data.get('issues') or []:
            key = issue.get('key')
            if not key:
                continue
            fields = issue.get('fields') or {}
            if fields.get('resolutiondate'):
                self._resolved.add(key)
            refs.append(WorkItemReference('jira', key, fields.get('summary') or '', facet))
        next_token = data.get('nextPageToken')
        if data.get('isLast') or not next_token:
            return refs, None
        return refs, next_token

    def fetch_detail(self, ref: WorkItemReference) -> DetailRecord:
        try:
            issue = self.client.get_issue(ref.identifier, resolved=ref.identifier in self._resolved)
        except SourceError as ex:
            raise PerItemFetchError(ref.identifier, str(ex), ex.status) from ex
        return ticket_detail_from_payload(ref, issue)


def build_source(source: str, settings, cache: Any = None):
    """Adapter for ``source`` wired with the settings' credentials and retry policy."""
    if source == 'github':
        client = GitHubClient(settings.github_token, cache=cache, policy=settings.retry_policy)
        return GitHubSource(client, settings.github_username)
    if source == 'jira':
        client = JiraClient(settings.jira_host, settings.jira_email, settings.jira_api_token, cache=cache, policy=settings.retry_policy)
        return JiraSource(client, settings.jira_email, settings.jira_include_reporter)
    raise ValueError(f"unknown source {source!r}")
