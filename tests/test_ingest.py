import base64
import json
import unittest
from unittest.mock import patch, Mock

from ingest.anthropic import ClassificationClient
from ingest.github import GitHubClient, build_search_query, split_identifier
from ingest.jira import JiraClient, build_jql
from normalize.models import WorkItemReference
from storage.cache import Cache
from sync.errors import SourceError, PerItemFetchError, RateLimitError, ClassificationError
from sync.sources import GitHubSource, JiraSource


def _resp(status, body, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = json.dumps(body)
    resp.headers = headers or {}
    return resp


class TestGitHub(unittest.TestCase):
    def test_search_query_qualifiers(self):
        self.assertEqual(build_search_query('octo', 'author', '2024-01-01', '2024-02-01', 'acme/web'),
                         'is:pr is:merged author:octo merged:2024-01-01..2024-02-01 repo:acme/web')
        self.assertEqual(build_search_query('octo', 'reviewer'), 'is:pr is:merged reviewed-by:octo')

    def test_split_identifier(self):
        self.assertEqual(split_identifier('acme/web#42'), ('acme/web', 42))
        with self.assertRaises(ValueError):
            split_identifier('acme/web')

    def test_search_page_builds_references_and_cursor(self):
        items = [{'number': n, 'title': f'PR {n}', 'repository_url': 'https://api.github.com/repos/acme/web'} for n in range(100)]
        with patch('storage.cache.requests.get', return_value=_resp(200, {'total_count': 150, 'items': items})) as mocked_get:
            source = GitHubSource(GitHubClient('tok'), 'octo')
            refs, cursor = source.search_page('author', 'is:pr author:octo', None)
        self.assertEqual(refs[5].identifier, 'acme/web#5')
        self.assertEqual(refs[5].facet, 'author')
        self.assertEqual(cursor, 2)
        _, kwargs = mocked_get.call_args
        self.assertEqual(kwargs['params'], {'q': 'is:pr author:octo', 'page': 1, 'per_page': 100})
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer tok')

    def test_last_page_has_no_cursor(self):
        items = [{'number': 1, 'title': 'PR', 'repository_url': 'https://api.github.com/repos/acme/web'}]
        with patch('storage.cache.requests.get', return_value=_resp(200, {'total_count': 101, 'items': items})):
            _, cursor = GitHubSource(GitHubClient('tok'), 'octo').search_page('author', 'q', 2)
        self.assertIsNone(cursor)

    def test_search_error_raises_source_error(self):
        with patch('storage.cache.requests.get', return_value=_resp(422, {'message': 'Validation Failed'})):
            with self.assertRaises(SourceError) as err:
                GitHubClient('tok').search_pull_requests('bad')
        self.assertEqual(err.exception.status, 422)

    def test_fetch_detail_isolates_errors(self):
        with patch('storage.cache.requests.get', return_value=_resp(404, {'message': 'Not Found'})):
            with self.assertRaises(PerItemFetchError) as err:
                GitHubSource(GitHubClient('tok'), 'octo').fetch_detail(WorkItemReference('github', 'acme/web#9', 'PR', 'author'))
        self.assertEqual(err.exception.identifier, 'acme/web#9')

    def test_fetch_detail_uses_cache_for_pr_parts(self):
        pr = {'title': 'PR', 'body': '', 'additions': 1, 'deletions': 0, 'merged_at': '2024-01-02T00:00:00Z', 'user': {'login': 'octo'}}
        responses = {
            'https://api.github.com/repos/acme/web/pulls/9': _resp(200, pr),
            'https://api.github.com/repos/acme/web/pulls/9/files': _resp(200, [{'filename': 'a.py'}]),
            'https://api.github.com/repos/acme/web/pulls/9/reviews': _resp(200, []),
        }
        cache = Cache()
        try:
            source = GitHubSource(GitHubClient('tok', cache=cache), 'octo')
            ref = WorkItemReference('github', 'acme/web#9', 'PR', 'author')
            with patch('storage.cache.requests.get', side_effect=lambda url, **kw: responses[url]) as mocked_get:
                record = source.fetch_detail(ref)
                again = source.fetch_detail(ref)
            self.assertEqual(mocked_get.call_count, 3)
            self.assertEqual(record.filenames, ['a.py'])
            self.assertEqual(again.resolved_at, '2024-01-02T00:00:00Z')
        finally:
            cache.close()


class TestJira(unittest.TestCase):
    def test_jql(self):
        self.assertEqual(build_jql('me@acme.io', ['WEB', 'API'], 'assignee', '2024-01-01', None),
                         'assignee = "me@acme.io" AND project IN (WEB, API) AND updated >= "2024-01-01" ORDER BY updated DESC')

    def test_basic_auth_and_host(self):
        client = JiraClient('acme.atlassian.net', 'me@acme.io', 'tok')
        self.assertEqual(client.base_url, 'https://acme.atlassian.net/rest/api/3')
        expected = base64.b64encode(b'me@acme.io:tok').decode('ascii')
        self.assertEqual(client.headers['Authorization'], f'Basic {expected}')

    def test_search_pages_with_token(self):
        page = {'issues': [{'key': 'WEB-1', 'fields': {'summary': 'One', 'resolutiondate': '2024-01-02T00:00:00.000+0000'}}], 'nextPageToken': 'abc', 'isLast': False}
        with patch('storage.cache.requests.get', return_value=_resp(200, page)) as mocked_get:
            source = JiraSource(JiraClient('acme.atlassian.net', 'me@acme.io', 'tok'), 'me@acme.io')
            refs, cursor = source.search_page('assignee', 'jql', 'prev')
        self.assertEqual([r.identifier for r in refs], ['WEB-1'])
        self.assertEqual(cursor, 'abc')
        self.assertEqual(mocked_get.call_args[1]['params']['nextPageToken'], 'prev')

        with patch('storage.cache.requests.get', return_value=_resp(200, {'issues': [], 'isLast': True})):
            _, cursor = source.search_page('assignee', 'jql', 'abc')
        self.assertIsNone(cursor)

    def test_reporter_facet_is_optional(self):
        client = JiraClient('acme.atlassian.net', 'me@acme.io', 'tok')
        self.assertEqual(JiraSource(client, 'me@acme.io').facets, ('assignee',))
        self.assertEqual(JiraSource(client, 'me@acme.io', include_reporter=True).facets, ('assignee', 'reporter'))


class TestClassificationClient(unittest.TestCase):
    def _client(self, resp):
        session = Mock()
        session.post.return_value = resp
        return ClassificationClient('sk', 'claude-sonnet-4-5-20250929', session=session), session

    def test_returns_text_blocks(self):
        client, session = self._client(_resp(200, {'content': [{'type': 'text', 'text': '{"analyses": '}, {'type': 'text', 'text': '[]}'}]}))
        self.assertEqual(client.complete('hi'), '{"analyses": []}')
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], 'https://api.anthropic.com/v1/messages')
        self.assertEqual(kwargs['headers']['x-api-key'], 'sk')
        self.assertEqual(json.loads(kwargs['data'])['messages'][0]['content'], 'hi')

    def test_429_is_rate_limit(self):
        client, _ = self._client(_resp(429, {'error': {'type': 'rate_limit_error'}}, {'retry-after': '12'}))
        with self.assertRaises(RateLimitError) as err:
            client.complete('hi')
        self.assertEqual(err.exception.retry_after, 12.0)

    def test_overloaded_is_rate_limit(self):
        client, _ = self._client(_resp(529, {'error': {'type': 'overloaded_error'}}))
        with self.assertRaises(RateLimitError):
            client.complete('hi')

    def test_other_errors_are_not_rate_limits(self):
        client, _ = self._client(_resp(400, {'error': {'type': 'invalid_request_error', 'message': 'bad'}}))
        with self.assertRaises(ClassificationError) as err:
            client.complete('hi')
        self.assertNotIsInstance(err.exception, RateLimitError)
        self.assertEqual(err.exception.status, 400)


if __name__ == '__main__':
    unittest.main()
