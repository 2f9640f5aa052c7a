import json
import unittest

from normalize.models import WorkItemReference, ComponentTag, AnalysisResult, DetailRecord
from normalize.util import adf_to_text, duration_days, pr_detail_from_payload, ticket_detail_from_payload, normalize_component_tags


class TestNormalize(unittest.TestCase):
    def test_pr_detail_from_payload(self):
        ref = WorkItemReference('github', 'acme/web#12', 'Add login', 'reviewer')
        pr = {
            'title': 'WEB-4 Add login form',
            'body': 'Implements the form. Refs WEB-5',
            'html_url': 'https://github.com/acme/web/pull/12',
            'additions': 40,
            'deletions': 3,
            'changed_files': 2,
            'created_at': '2024-03-01T10:00:00Z',
            'merged_at': '2024-03-02T10:00:00Z',
            'updated_at': '2024-03-02T11:00:00Z',
            'merged': True,
            'state': 'closed',
            'user': {'login': 'octo'},
        }
        files = [{'filename': 'src/login.ts', 'additions': 30, 'deletions': 1}, {'filename': 'src/login.css', 'additions': 10, 'deletions': 2}]
        reviews = [{'user': {'login': 'rev1'}}, {'user': {'login': 'rev1'}}, {'user': {'login': 'rev2'}}]

        record = pr_detail_from_payload(ref, pr, files, reviews)
        self.assertEqual(record.natural_key, ('github', 'acme/web#12', 'reviewer'))
        self.assertEqual(record.author, 'octo')
        self.assertEqual(record.reviewers, ['rev1', 'rev2'])
        self.assertEqual(record.filenames, ['src/login.ts', 'src/login.css'])
        self.assertEqual(record.cross_references, ['WEB-4', 'WEB-5'])
        self.assertEqual(record.occurred_at, '2024-03-02T10:00:00Z')
        self.assertTrue(record.metadata['merged'])

    def test_ticket_detail_from_payload(self):
        ref = WorkItemReference('jira', 'WEB-4', 'Login', 'assignee')
        issue = {
            'key': 'WEB-4',
            'self': 'https://acme.atlassian.net/rest/api/3/issue/1001',
            'fields': {
                'summary': 'Login form',
                'description': {'type': 'doc', 'content': [{'type': 'paragraph', 'content': [{'type': 'text', 'text': 'Build it'}]}]},
                'status': {'name': 'Done'},
                'issuetype': {'name': 'Story'},
                'priority': {'name': 'High'},
                'assignee': {'displayName': 'Octo Cat'},
                'created': '2024-03-01T10:00:00.000+0000',
                'resolutiondate': '2024-03-04T10:00:00.000+0000',
                'customfield_10028': 5,
                'parent': {'key': 'WEB-1', 'fields': {'summary': 'Auth epic'}},
                'comment': {'comments': [{}, {}]},
            },
        }
        record = ticket_detail_from_payload(ref, issue)
        self.assertEqual(record.source_system, 'jira')
        self.assertEqual(record.body, 'Build it')
        self.assertEqual(record.metadata['story_points'], 5)
        self.assertEqual(record.metadata['duration_days'], 3)
        self.assertEqual(record.metadata['epic_key'], 'WEB-1')
        self.assertEqual(record.metadata['comment_count'], 2)
        self.assertEqual(record.components, [])

    def test_occurred_at_falls_back_to_updated_then_created(self):
        record = DetailRecord('jira', 'WEB-1', 'assignee', 't', created_at='2024-01-01', updated_at='2024-01-05')
        self.assertEqual(record.occurred_at, '2024-01-05')
        record.updated_at = None
        self.assertEqual(record.occurred_at, '2024-01-01')

    def test_adf_to_text_handles_strings_and_breaks(self):
        self.assertEqual(adf_to_text('plain'), 'plain')
        node = {'type': 'paragraph', 'content': [{'type': 'text', 'text': 'a'}, {'type': 'hardBreak'}, {'type': 'text', 'text': 'b'}]}
        self.assertEqual(adf_to_text(node), 'a\nb\n')
        self.assertEqual(adf_to_text(None), '')

    def test_duration_days_missing_dates(self):
        self.assertIsNone(duration_days(None, '2024-01-01T00:00:00Z'))

    def test_normalize_component_tags_legacy_and_typed(self):
        legacy = normalize_component_tags(json.dumps(['src/api', 'web']))
        self.assertEqual(legacy, [ComponentTag('src/api', 1, 2), ComponentTag('web', 1, 1)])

        typed = normalize_component_tags([{'name': 'src/api', 'count': 4, 'depth': 2}, ComponentTag('x', 2, 1)])
        self.assertEqual(typed, [ComponentTag('src/api', 4, 2), ComponentTag('x', 2, 1)])

        self.assertEqual(normalize_component_tags(None), [])
        self.assertEqual(normalize_component_tags('lib/core'), [ComponentTag('lib/core', 1, 2)])

    def test_analysis_fallback(self):
        record = DetailRecord('github', 'acme/web#1', 'author', 'Fix crash')
        fallback = AnalysisResult.fallback(record)
        self.assertEqual((fallback.summary, fallback.category, fallback.scope, fallback.criterion_ids), ('Fix crash', 'other', 'medium', []))


if __name__ == '__main__':
    unittest.main()
