"""
Correlate package: find Jira keys referenced by pull requests.
"""

from .linker import find_issue_keys_in_text, cross_references

__all__ = ["find_issue_keys_in_text", "cross_references"]
