"""nightlife_etl.source_client

Executes GraphQL payloads against the events-graph API and unwraps the
`{data, errors?}` envelope.

Policy:
  - non-2xx or transport failure  → TransportError
  - errors present alongside data → errors logged, data returned
  - no data field                 → DataAbsentError
  - no retries here; callers decide whether a failure is a skip or fatal.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

import requests

log = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://ra.co/graphql"
DEFAULT_TIMEOUT = 30
_BODY_EXCERPT = 500


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceError(Exception):
    """Base class for a failed fetch against the events-graph API."""


class TransportError(SourceError):
    """Network failure or non-2xx HTTP status."""

    def __init__(self, status: int | None, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"transport error: status={status} body={body[:_BODY_EXCERPT]!r}")


class DataAbsentError(SourceError):
    """2xx response carrying no data payload."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SourceClient:
    """Thin POST client for the events-graph endpoint."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        user_agent: str = "nightlife-etl/1.0",
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        })
        self.calls = 0
        self._calls_lock = threading.Lock()

    def fetch(self, query: dict[str, Any]) -> dict[str, Any]:
        """POST one payload and return its `data` object.

        Raises TransportError or DataAbsentError.
        """
        with self._calls_lock:
            self.calls += 1
        op = query.get("operationName", "?")
        try:
            resp = self._session.post(
                self.endpoint, data=json.dumps(query), timeout=self.timeout
            )
        except requests.RequestException as exc:
            log.error("%s request failed: %s", op, exc)
            raise TransportError(None, str(exc)) from exc

        if not 200 <= resp.status_code < 300:
            log.error("%s returned status %s", op, resp.status_code)
            raise TransportError(resp.status_code, resp.text or "")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise DataAbsentError(f"{op}: response body is not JSON") from exc

        if not isinstance(payload, dict):
            raise DataAbsentError(f"{op}: unexpected response envelope")

        errors = payload.get("errors")
        if errors:
            log.warning("%s returned GraphQL errors: %s", op, json.dumps(errors)[:_BODY_EXCERPT])

        data = payload.get("data")
        if data is None:
            raise DataAbsentError(f"{op}: no data returned")
        return data
