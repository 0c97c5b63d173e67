"""HTTP client shared by the remote providers.

Wraps httpx with bearer/raw token auth, a request timeout and retry with
exponential backoff. Failures come back as ApiResponse values instead of
exceptions so providers can turn them into None/False results.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger("tsk.http")

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_ATTEMPTS = 3
RETRY_STATUSES = frozenset({429, 500, 502, 503})


@dataclass(frozen=True)
class ApiResponse:
    data: Any = None
    status: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ApiClient:
    """Small JSON API client with retries.

    401 responses are returned immediately. 429/5xx responses and transport
    errors are retried up to max_attempts times, sleeping 1 s, 2 s, 4 s ...
    between attempts.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        auth_scheme: str | None = "Bearer",
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        authorization = f"{auth_scheme} {token}" if auth_scheme else token
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={"Authorization": authorization},
            timeout=timeout,
            transport=transport,
        )
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep

    def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self._client.request(method, url, json=json, params=params)
            except httpx.HTTPError as e:
                if attempt < self._max_attempts:
                    self._backoff(attempt, method, url, str(e))
                    continue
                logger.warning("%s %s failed: %s", method, url, e)
                return ApiResponse(error=str(e) or type(e).__name__, status=0)

            if resp.status_code == 401:
                return ApiResponse(error="Unauthorized (401)", status=401)
            if resp.is_error:
                if resp.status_code in RETRY_STATUSES and attempt < self._max_attempts:
                    self._backoff(attempt, method, url, f"HTTP {resp.status_code}")
                    continue
                logger.warning("%s %s returned HTTP %d", method, url, resp.status_code)
                return ApiResponse(
                    error=resp.text or f"HTTP {resp.status_code}", status=resp.status_code
                )
            return ApiResponse(data=_decode(resp), status=resp.status_code)

    def get(self, url: str, params: dict[str, Any] | None = None) -> ApiResponse:
        return self.request("GET", url, params=params)

    def post(self, url: str, json: Any = None) -> ApiResponse:
        return self.request("POST", url, json=json)

    def delete(self, url: str) -> ApiResponse:
        return self.request("DELETE", url)

    def graphql(self, query: str, variables: dict[str, Any] | None = None) -> ApiResponse:
        """POST a GraphQL query. The first GraphQL error becomes the response error."""
        resp = self.post(self._base_url, json={"query": query, "variables": variables or {}})
        if not resp.ok:
            return resp
        body = resp.data if isinstance(resp.data, dict) else {}
        errors = body.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            return ApiResponse(error=first.get("message") or "GraphQL error", status=resp.status)
        if body.get("data") is None:
            return ApiResponse(error="Missing GraphQL data", status=resp.status)
        return ApiResponse(data=body["data"], status=resp.status)

    def close(self) -> None:
        self._client.close()

    def _backoff(self, attempt: int, method: str, url: str, reason: str) -> None:
        delay = 2 ** (attempt - 1)
        logger.debug("%s %s: %s, retrying in %ss", method, url, reason, delay)
        self._sleep(delay)


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return resp.text
