"""
Settings for sync jobs.

Values come from an optional YAML file and are overridden by environment
variables (a .env file in the working directory is loaded first). Settings
are resolved once per job and passed down explicitly.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

import yaml
from dotenv import load_dotenv

from storage.retry import RetryPolicy
from sync.errors import ConfigurationError

DEFAULT_MODEL = 'claude-sonnet-4-5-20250929'
DEFAULT_DB_PATH = 'evidence.db'
DEFAULT_LOOKBACK_DAYS = 365
DRY_RUN_LIMIT = 20
SOURCES = ('github', 'jira')

# env var -> settings attribute
ENV_KEYS = {
    'GITHUB_TOKEN': 'github_token',
    'GITHUB_USERNAME': 'github_username',
    'GITHUB_REPOSITORIES': 'github_repositories',
    'JIRA_HOST': 'jira_host',
    'JIRA_EMAIL': 'jira_email',
    'JIRA_API_TOKEN': 'jira_api_token',
    'JIRA_PROJECTS': 'jira_projects',
    'ANTHROPIC_API_KEY': 'anthropic_api_key',
    'ANTHROPIC_MODEL': 'anthropic_model',
    'EVIDENCE_DB_PATH': 'db_path',
    'EVIDENCE_CACHE_PATH': 'cache_path',
    'EVIDENCE_FETCH_WORKERS': 'fetch_workers',
    'EVIDENCE_USER_CONTEXT': 'user_context',
}
LIST_KEYS = ('github_repositories', 'jira_projects')


def _as_list(value: Any) -> List[str]:
    if value is None or value == '':
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


class SyncSettings:
    """Credentials, scopes and tuning knobs for one pipeline run."""

    def __init__(
        self,
        github_token: str = None,
        github_username: str = None,
        github_repositories: List[str] = None,
        jira_host: str = None,
        jira_email: str = None,
        jira_api_token: str = None,
        jira_projects: List[str] = None,
        jira_include_reporter: bool = False,
        anthropic_api_key: str = None,
        anthropic_model: str = DEFAULT_MODEL,
        db_path: str = DEFAULT_DB_PATH,
        cache_path: str = None,
        fetch_workers: int = 1,
        dry_run_limit: int = DRY_RUN_LIMIT,
        user_context: str = '',
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.github_token = github_token
        self.github_username = github_username
        self.github_repositories = _as_list(github_repositories)
        self.jira_host = jira_host
        self.jira_email = jira_email
        self.jira_api_token = jira_api_token
        self.jira_projects = _as_list(jira_projects)
        self.jira_include_reporter = _as_bool(jira_include_reporter)
        self.anthropic_api_key = anthropic_api_key
        self.anthropic_model = anthropic_model or DEFAULT_MODEL
        self.db_path = db_path or DEFAULT_DB_PATH
        self.cache_path = cache_path
        self.fetch_workers = max(1, int(fetch_workers or 1))
        self.dry_run_limit = int(dry_run_limit)
        self.user_context = user_context or ''
        self.retry_policy = retry_policy or RetryPolicy()

    def missing(self, source: str) -> List[str]:
        """Names of the settings a ``source`` sync cannot run without."""
        if source == 'github':
            required = {'GITHUB_TOKEN': self.github_token}
        elif source == 'jira':
            required = {'JIRA_HOST': self.jira_host, 'JIRA_EMAIL': self.jira_email, 'JIRA_API_TOKEN': self.jira_api_token}
        else:
            raise ConfigurationError(f"unknown source {source!r}; expected one of {', '.join(SOURCES)}")
        required['ANTHROPIC_API_KEY'] = self.anthropic_api_key
        return [name for name, value in required.items() if not value]

    def require(self, source: str) -> 'SyncSettings':
        missing = self.missing(source)
        if missing:
            raise ConfigurationError(f"{source} sync is not configured, missing: {', '.join(missing)}")
        return self

    def scopes(self, source: str) -> List[str]:
        return list(self.github_repositories if source == 'github' else self.jira_projects)


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as ex:
        raise ConfigurationError(f"cannot read config file {path}: {ex}") from ex
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return data


def _flatten(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both flat keys and the sectioned layout (github:/jira:/anthropic:/storage:)."""
    flat: Dict[str, Any] = {}
    sections = {
        'github': {'token': 'github_token', 'username': 'github_username', 'repositories': 'github_repositories'},
        'jira': {'host': 'jira_host', 'email': 'jira_email', 'api_token': 'jira_api_token', 'projects': 'jira_projects', 'include_reporter': 'jira_include_reporter'},
        'anthropic': {'api_key': 'anthropic_api_key', 'model': 'anthropic_model'},
        'storage': {'db_path': 'db_path', 'cache_path': 'cache_path'},
    }
    for key, value in doc.items():
        if key in sections and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                attr = sections[key].get(sub_key)
                if attr:
                    flat[attr] = sub_value
        elif key == 'retry' and isinstance(value, dict):
            flat['retry'] = value
        else:
            flat[key] = value
    return flat


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> SyncSettings:
    """Resolve settings from ``path`` (YAML) and the environment.

    When ``env`` is None the process environment is used, after loading a
    .env file if present. Environment values win over file values.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    values: Dict[str, Any] = _flatten(_read_yaml(path)) if path else {}
    retry_overrides = values.pop('retry', None) or {}

    for env_key, attr in ENV_KEYS.items():
        if env.get(env_key):
            values[attr] = env[env_key]

    try:
        values['retry_policy'] = RetryPolicy.from_env(env, **retry_overrides)
    except (TypeError, ValueError) as ex:
        raise ConfigurationError(f"invalid retry settings: {ex}") from ex

    known = set(ENV_KEYS.values()) | {'jira_include_reporter', 'dry_run_limit', 'retry_policy'}
    try:
        return SyncSettings(**{k: v for k, v in values.items() if k in known})
    except (TypeError, ValueError) as ex:
        raise ConfigurationError(f"invalid settings: {ex}") from ex


def _iso_date(value: Optional[str], field: str) -> Optional[str]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).date().isoformat()
    except ValueError as ex:
        raise ConfigurationError(f"{field} is not an ISO date: {value!r}") from ex


class SyncRequest:
    """Runtime parameters of one sync job."""

    def __init__(self, source: str, start_date: str = None, end_date: str = None, scopes: List[str] = None, update_existing: bool = False, dry_run: bool = False):
        if source not in SOURCES:
            raise ConfigurationError(f"unknown source {source!r}; expected one of {', '.join(SOURCES)}")
        self.source = source
        end = _iso_date(end_date, 'endDate') or datetime.now(timezone.utc).date().isoformat()
        self.end_date = end
        self.start_date = _iso_date(start_date, 'startDate') or (datetime.fromisoformat(end) - timedelta(days=DEFAULT_LOOKBACK_DAYS)).date().isoformat()
        if self.start_date > self.end_date:
            raise ConfigurationError(f"startDate {self.start_date} is after endDate {self.end_date}")
        self.scopes = _as_list(scopes)
        self.update_existing = bool(update_existing)
        self.dry_run = bool(dry_run)

    @classmethod
    def from_dict(cls, source: str, data: Dict[str, Any]) -> 'SyncRequest':
        """Build from the camelCase request body ``{startDate?, endDate?, projects?|repositories?, updateExisting?, dryRun?}``."""
        data = data or {}
        scopes = data.get('repositories') if source == 'github' else data.get('projects')
        return cls(
            source,
            start_date=data.get('startDate'),
            end_date=data.get('endDate'),
            scopes=scopes,
            update_existing=_as_bool(data.get('updateExisting', False)),
            dry_run=_as_bool(data.get('dryRun', False)),
        )

    @property
    def job_type(self) -> str:
        return f"{self.source.upper()}_SYNC"

    def to_dict(self) -> Dict[str, Any]:
        scope_key = 'repositories' if self.source == 'github' else 'projects'
        return {
            'source': self.source,
            'startDate': self.start_date,
            'endDate': self.end_date,
            scope_key: list(self.scopes),
            'updateExisting': self.update_existing,
            'dryRun': self.dry_run,
        }
