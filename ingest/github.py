"""
GitHub REST client for the sync pipeline.
Search results are never cached; pull request details, files and reviews of
merged PRs do not change, so those go through the response cache when one is given.
"""
from typing import List, Dict, Any, Optional
from storage.cache import rate_limited_get, Cache
from storage.retry import RetryPolicy
from sync.errors import SourceError

SEARCH_PAGE_SIZE = 100
LIST_PAGE_SIZE = 100
# GitHub stops listing PR files after 3000 entries
MAX_LIST_PAGES = 30


def build_search_query(user: str, facet: str, start_date: Optional[str] = None, end_date: Optional[str] = None, repo: Optional[str] = None) -> str:
    """Search qualifier string for merged PRs a user authored or reviewed."""
    qualifier = 'reviewed-by' if facet == 'reviewer' else 'author'
    query = f"is:pr is:merged {qualifier}:{user}"
    if start_date and end_date:
        query += f" merged:{start_date}..{end_date}"
    elif start_date:
        query += f" merged:>={start_date}"
    elif end_date:
        query += f" merged:<={end_date}"
    if repo:
        query += f" repo:{repo}"
    return query


def split_identifier(identifier: str):
    """'owner/repo#123' -> ('owner/repo', 123)"""
    repo, _, number = identifier.rpartition('#')
    if not repo or not number.isdigit():
        raise ValueError(f"not a pull request identifier: {identifier!r}")
    return repo, int(number)


class GitHubClient:
    """Simple GitHub client to search merged PRs and fetch their details."""

    def __init__(self, token: str, base_url: str = None, cache: Optional[Cache] = None, policy: Optional[RetryPolicy] = None):
        self.token = token
        self.base_url = (base_url or "https://api.github.com").rstrip('/')
        self.headers = {
            "Authorization": f"Bearer {self.token}" if self.token else "",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.cache = cache
        self.policy = policy

    def _get(self, path: str, params: Dict[str, Any] = None, cache_key: str = None) -> Any:
        res = rate_limited_get(
            f"{self.base_url}{path}",
            headers=self.headers,
            params=params,
            cache=self.cache if cache_key else None,
            cache_key=cache_key,
            policy=self.policy,
        )
        status = res.get('status', 500)
        if status != 200:
            data = res.get('response')
            detail = data.get('message') if isinstance(data, dict) else data
            raise SourceError(f"GET {path} returned {status}: {detail}", status=status)
        return res.get('response')

    def authenticated_login(self) -> str:
        return (self._get('/user') or {}).get('login', '')

    def search_pull_requests(self, query: str, page: int = 1, per_page: int = SEARCH_PAGE_SIZE) -> Dict[str, Any]:
        """One page of ``GET /search/issues``; returns the raw ``{total_count, items}`` body."""
        data = self._get('/search/issues', params={'q': query, 'page': page, 'per_page': per_page})
        if not isinstance(data, dict):
            raise SourceError(f"unexpected search response for {query!r}")
        return data

    def get_pull_request(self, repo: str, number: int) -> Dict[str, Any]:
        return self._get(f"/repos/{repo}/pulls/{number}", cache_key=f"github:pr:{repo}#{number}")

    def _list(self, path: str, cache_prefix: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while page <= MAX_LIST_PAGES:
            data = self._get(path, params={'page': page, 'per_page': LIST_PAGE_SIZE}, cache_key=f"{cache_prefix}:page:{page}")
            if not isinstance(data, list):
                break
            items.extend(data)
            if len(data) < LIST_PAGE_SIZE:
                break
            page += 1
        return items

    def list_files(self, repo: str, number: int) -> List[Dict[str, Any]]:
        return self._list(f"/repos/{repo}/pulls/{number}/files", f"github:files:{repo}#{number}")

    def list_reviews(self, repo: str, number: int) -> List[Dict[str, Any]]:
        return self._list(f"/repos/{repo}/pulls/{number}/reviews", f"github:reviews:{repo}#{number}")
