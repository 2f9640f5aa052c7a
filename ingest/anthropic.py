"""
Classification service client (Anthropic Messages API over requests).

Only the behavioural contract matters to the pipeline: send a prompt, get back
text, and be able to tell a rate limit apart from any other failure.
"""
import json
import logging
from typing import Dict, Any, Optional
import requests

from storage.retry import parse_retry_after
from sync.errors import ClassificationError, RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
API_VERSION = "2023-06-01"
RATE_LIMIT_STATUSES = (429, 529)
RATE_LIMIT_ERROR_TYPES = ('rate_limit_error', 'overloaded_error')


class ClassificationClient:
    """Minimal Messages API client returning the concatenated text of a reply."""

    def __init__(self, api_key: str, model: str, base_url: str = None, max_tokens: int = 4096, timeout: float = 120.0, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _error_type(body: Any) -> str:
        if isinstance(body, dict):
            return ((body.get('error') or {}).get('type')) or ''
        return ''

    def complete(self, prompt: str, system: Optional[str] = None) -> str:
        """Send one user prompt and return the reply text.

        Raises RateLimitError on a rate-limit signal and ClassificationError on
        any other transport or HTTP failure.
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system

        try:
            resp = self.session.post(f"{self.base_url}/messages", headers=self.headers, data=json.dumps(payload), timeout=self.timeout)
        except requests.RequestException as ex:
            raise ClassificationError(f"classification request failed: {ex}") from ex

        try:
            body = resp.json()
        except ValueError:
            body = resp.text

        if resp.status_code in RATE_LIMIT_STATUSES or self._error_type(body) in RATE_LIMIT_ERROR_TYPES:
            retry_after = parse_retry_after((resp.headers or {}).get('retry-after'))
            raise RateLimitError(f"rate_limit_error: status {resp.status_code}", status=resp.status_code, retry_after=retry_after)

        if resp.status_code != 200:
            detail = ((body.get('error') or {}).get('message')) if isinstance(body, dict) else body
            raise ClassificationError(f"classification service returned {resp.status_code}: {detail}", status=resp.status_code)
        if not isinstance(body, dict):
            raise ClassificationError("classification service returned a non-JSON body", status=resp.status_code)

        usage = body.get('usage') or {}
        logger.debug("classification used %s input / %s output tokens", usage.get('input_tokens'), usage.get('output_tokens'))
        return ''.join(block.get('text', '') for block in body.get('content') or [] if block.get('type') == 'text')
