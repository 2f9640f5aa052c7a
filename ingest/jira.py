"""
Jira Cloud REST client for the sync pipeline.
Uses basic auth (account email + API token) and the token-paginated
enhanced JQL search endpoint.
"""

import base64
from typing import List, Dict, Any, Optional
from storage.cache import rate_limited_get, Cache
from storage.retry import RetryPolicy
from sync.errors import SourceError

SEARCH_PAGE_SIZE = 100
SEARCH_FIELDS = ['summary', 'status', 'updated', 'created', 'resolutiondate']
DETAIL_FIELDS = [
    'summary', 'description', 'status', 'issuetype', 'priority', 'assignee', 'reporter', 'created', 'updated',
    'resolutiondate', 'parent', 'comment', 'customfield_10028', 'customfield_10016',
]


def build_jql(email: str, projects: List[str], facet: str = 'assignee', start_date: Optional[str] = None, end_date: Optional[str] = None) -> str:
    """JQL for the tickets a user holds in ``facet`` (assignee/reporter), newest first."""
    clauses = [f'{facet} = "{email}"']
    if projects:
        clauses.append(f"project IN ({', '.join(projects)})")
    if start_date:
        clauses.append(f'updated >= "{start_date}"')
    if end_date:
        clauses.append(f'updated <= "{end_date}"')
    return ' AND '.join(clauses) + ' ORDER BY updated DESC'


class JiraClient:
    """Minimal Jira client for searching and fetching issues."""

    def __init__(self, host: str, email: str, api_token: str, cache: Optional[Cache] = None, policy: Optional[RetryPolicy] = None):
        host = (host or '').rstrip('/')
        if host and not host.startswith('http'):
            host = f"https://{host}"
        self.base_url = f"{host}/rest/api/3"
        self.email = email
        auth = base64.b64encode(f"{email}:{api_token}".encode('utf-8')).decode('ascii')
        self.headers = {
            "Authorization": f"Basic {auth}",
            "Accept": "application/json",
        }
        self.cache = cache
        self.policy = policy

    def _get(self, path: str, params: Dict[str, Any] = None, cache_key: str = None) -> Dict[str, Any]:
        res = rate_limited_get(
            f"{self.base_url}{path}",
            headers=self.headers,
            params=params,
            cache=self.cache if cache_key else None,
            cache_key=cache_key,
            policy=self.policy,
        )
        status = res.get('status', 500)
        data = res.get('response')
        if status != 200:
            messages = data.get('errorMessages') if isinstance(data, dict) else data
            raise SourceError(f"GET {path} returned {status}: {messages}", status=status)
        if not isinstance(data, dict):
            raise SourceError(f"GET {path} returned a non-object body")
        return data

    def search(self, jql: str, next_page_token: Optional[str] = None, max_results: int = SEARCH_PAGE_SIZE) -> Dict[str, Any]:
        """One page of ``GET /search/jql``; returns ``{issues, nextPageToken?, isLast?}``."""
        params: Dict[str, Any] = {'jql': jql, 'maxResults': max_results, 'fields': ','.join(SEARCH_FIELDS)}
        if next_page_token:
            params['nextPageToken'] = next_page_token
        return self._get('/search/jql', params=params)

    def get_issue(self, key: str, resolved: bool = False) -> Dict[str, Any]:
        """Full issue payload. Only resolved tickets are served from the cache."""
        cache_key = f"jira:issue:{key}" if resolved else None
        return self._get(f"/issue/{key}", params={'fields': ','.join(DETAIL_FIELDS)}, cache_key=cache_key)
