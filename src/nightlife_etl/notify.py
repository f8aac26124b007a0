"""nightlife_etl.notify

Follower notifications for newly created event links.

UpsertEngine calls `on_link_created(link_table, event_id, page_id)` once
for every link row it actually inserts. FollowerNotifier turns that into
push messages for the users behind every page following the linked page:

    followers.followed_page_id = page_id
      → followers.follower_page_id
      → user_page.user_id
      → users_expo_push_tokens.expo_push_token

and hands them to ExpoPushClient.send().
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable

import psycopg
import requests

log = logging.getLogger(__name__)

DEFAULT_PUSH_URL = "https://exp.host/--/api/v2/push/send"
PUSH_CHUNK_SIZE = 100

_PUSH_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")


def is_push_token(token: str | None) -> bool:
    return bool(token) and bool(_PUSH_TOKEN_RE.match(token))


@dataclass
class PushMessage:
    to: str
    title: str
    body: str
    sound: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class ExpoPushClient:
    """Posts push messages to the Expo push API in chunks of 100."""

    def __init__(
        self,
        access_token: str | None = None,
        url: str = DEFAULT_PUSH_URL,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if access_token:
            self._session.headers["Authorization"] = f"Bearer {access_token}"

    def send(self, messages: list[PushMessage]) -> list[dict[str, Any]]:
        """Deliver messages; returns the push tickets of every chunk that went through."""
        tickets: list[dict[str, Any]] = []
        for start in range(0, len(messages), PUSH_CHUNK_SIZE):
            chunk = messages[start:start + PUSH_CHUNK_SIZE]
            try:
                resp = self._session.post(
                    self.url, json=[m.to_dict() for m in chunk], timeout=self.timeout
                )
                resp.raise_for_status()
                tickets.extend(resp.json().get("data") or [])
            except (requests.RequestException, ValueError) as exc:
                log.error("Push chunk of %d failed: %s", len(chunk), exc)
        return tickets


# ---------------------------------------------------------------------------
# Link sink
# ---------------------------------------------------------------------------

class FollowerNotifier:
    def __init__(
        self,
        conn: psycopg.Connection,
        deliver: Callable[[list[PushMessage]], Any],
    ) -> None:
        self.conn = conn
        self.deliver = deliver
        self.sent = 0

    def on_link_created(self, link_table: str, event_id: str, page_id: str) -> None:
        messages = self.build_messages(event_id, page_id)
        if not messages:
            return
        log.info("%s: notifying %d followers of page %s", link_table, len(messages), page_id)
        self.deliver(messages)
        self.sent += len(messages)

    def build_messages(self, event_id: str, page_id: str) -> list[PushMessage]:
        event = self.conn.execute("SELECT name FROM events WHERE id = %s", (event_id,)).fetchone()
        page = self.conn.execute("SELECT name FROM pages WHERE id = %s", (page_id,)).fetchone()
        if event is None or page is None:
            log.debug("Event %s or page %s not found; nothing to notify", event_id, page_id)
            return []

        messages = []
        for token in self.recipient_tokens(page_id):
            if not is_push_token(token):
                log.warning("Skipping malformed push token %r", token)
                continue
            messages.append(PushMessage(
                to=token,
                title=f"Just announced from {page[0]}",
                body=event[0],
            ))
        return messages

    def recipient_tokens(self, page_id: str) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT DISTINCT t.expo_push_token
            FROM followers f
            JOIN user_page up ON up.page_id = f.follower_page_id
            JOIN users_expo_push_tokens t ON t.user_id = up.user_id
            WHERE f.followed_page_id = %s
              AND t.expo_push_token IS NOT NULL
            ORDER BY t.expo_push_token
            """,
            (page_id,),
        ).fetchall()
        return [r[0] for r in rows]
