"""
Retry/backoff and rate-limit-aware HTTP GET helper.

Backoff parameters travel in a RetryPolicy value that callers resolve once
(see sync.config) and pass down; there is no process-wide mutable default.
"""

import os
import time
import random
import email.utils
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import requests

logger = logging.getLogger(__name__)

MAX_WAIT_SECONDS = 300.0
RETRY_STATUSES = (429, 503)


class RetryPolicy:
    """Retry/backoff settings for one pipeline run."""

    def __init__(self, max_retries: int = 3, backoff_base: float = 0.5, backoff_jitter: Optional[float] = None, max_backoff: float = 120.0, timeout: float = 30.0):
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = float(backoff_base)
        # jitter defaults to the base backoff when unset
        self.backoff_jitter = float(backoff_jitter) if backoff_jitter is not None else self.backoff_base
        self.max_backoff = float(max_backoff)
        self.timeout = float(timeout)

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, **overrides) -> 'RetryPolicy':
        """Build a policy from CONTRIB_* environment variables; explicit non-None overrides win."""
        env = os.environ if env is None else env
        jitter = env.get('CONTRIB_BACKOFF_JITTER')
        values = {
            'max_retries': int(env.get('CONTRIB_MAX_RETRIES', '3')),
            'backoff_base': float(env.get('CONTRIB_BACKOFF_BASE', '0.5')),
            'backoff_jitter': float(jitter) if jitter not in (None, '') else None,
            'max_backoff': float(env.get('CONTRIB_MAX_BACKOFF', '120.0')),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def __repr__(self):
        return f"RetryPolicy(max_retries={self.max_retries}, backoff_base={self.backoff_base}, max_backoff={self.max_backoff})"


def parse_retry_after(raw_ra: str):
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not raw_ra or not isinstance(raw_ra, str):
        return None
    try:
        return float(raw_ra)
    except ValueError:
        try:
            dt = email.utils.parsedate_to_datetime(raw_ra)
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _header_number(headers, key: str, cast):
    try:
        val = headers.get(key)
        return cast(val) if val is not None else None
    except (TypeError, ValueError):
        return None


def _parse_rate_headers(resp):
    headers = getattr(resp, 'headers', None) or {}
    ra = parse_retry_after(headers.get('Retry-After'))
    rl_remaining = _header_number(headers, 'X-RateLimit-Remaining', int)
    rl_reset = _header_number(headers, 'X-RateLimit-Reset', float)
    return ra, rl_remaining, rl_reset


def _parse_body(resp):
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, 'text', None)


def _should_retry_response(status_code: int, ra: Optional[float], rl_remaining: Optional[int]) -> bool:
    if status_code in RETRY_STATUSES:
        return True
    if ra is not None:
        return True
    if rl_remaining is not None and rl_remaining <= 0:
        return True
    return False


def _compute_wait_seconds(ra: Optional[float], rl_reset: Optional[float], backoff: float, jitter: float) -> float:
    if ra is not None:
        return min(float(ra) + random.uniform(0, jitter), MAX_WAIT_SECONDS)
    if rl_reset:
        wait = max(0.0, float(rl_reset) - time.time())
        return min(wait + random.uniform(0, jitter), MAX_WAIT_SECONDS)
    return min(backoff + random.uniform(0, jitter), MAX_WAIT_SECONDS)


def _attempt_request_once(url: str, headers: Dict[str, str], params: Dict[str, Any], timeout: float):
    try:
        resp = requests.get(url, headers=headers or {}, params=params or {}, timeout=timeout)
    except requests.RequestException as ex:
        return 'error', {'exception': str(ex)}

    status = getattr(resp, 'status_code', 0)
    if status == 200:
        return 'success', {'body': _parse_body(resp), 'status': status}

    ra, rl_remaining, rl_reset = _parse_rate_headers(resp)
    if _should_retry_response(status, ra, rl_remaining):
        return 'retry', {'status': status, 'ra': ra, 'rl_reset': rl_reset, 'text': getattr(resp, 'text', None)}

    return 'fail', {'body': _parse_body(resp), 'status': status}


def perform_request_with_retries(url: str, headers: Dict[str, str], params: Dict[str, Any], policy: Optional[RetryPolicy] = None, cache=None, cache_key: str = '') -> Dict[str, Any]:
    """GET ``url`` until it succeeds, fails permanently, or the policy's attempts run out.

    Returns ``{'response', 'status', 'timestamp'}``; status 0 means no HTTP response was received.
    Successful bodies are written to ``cache`` under ``cache_key`` when both are given.
    """
    policy = policy or RetryPolicy()
    backoff = policy.backoff_base
    last_result: Dict[str, Any] = {'response': None, 'status': 0, 'timestamp': time.time()}

    for attempt in range(policy.max_retries):
        outcome, data = _attempt_request_once(url, headers, params, policy.timeout)

        if outcome == 'success':
            if cache is not None and cache_key:
                cache.set(cache_key, data['body'], data['status'])
            return {'response': data['body'], 'status': data['status'], 'timestamp': time.time()}

        if outcome == 'fail':
            return {'response': data['body'], 'status': data['status'], 'timestamp': time.time()}

        if outcome == 'error':
            logger.warning("GET %s failed (attempt %d/%d): %s", url, attempt + 1, policy.max_retries, data['exception'])
            last_result = {'response': data['exception'], 'status': 0, 'timestamp': time.time()}
            wait_seconds = min(backoff + random.uniform(0, policy.backoff_jitter), policy.max_backoff)
        else:
            logger.info("GET %s rate limited with status %s (attempt %d/%d)", url, data['status'], attempt + 1, policy.max_retries)
            last_result = {'response': data['text'], 'status': data['status'], 'timestamp': time.time()}
            wait_seconds = _compute_wait_seconds(data['ra'], data['rl_reset'], backoff, policy.backoff_jitter)

        backoff = min(backoff * 2, policy.max_backoff)
        if attempt < policy.max_retries - 1:
            time.sleep(wait_seconds)

    return last_result


__all__ = ["RetryPolicy", "perform_request_with_retries", "parse_retry_after"]
