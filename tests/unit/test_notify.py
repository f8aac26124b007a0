"""Unit tests for nightlife_etl.notify (delivery side; no database)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from nightlife_etl.notify import (
    PUSH_CHUNK_SIZE,
    ExpoPushClient,
    FollowerNotifier,
    PushMessage,
    is_push_token,
)


def _session(responses=None) -> MagicMock:
    session = MagicMock()
    session.headers = {}
    if responses is not None:
        session.post.side_effect = responses
    return session


def _ok(tickets: list[dict]) -> MagicMock:
    r = MagicMock()
    r.json.return_value = {"data": tickets}
    return r


def _messages(n: int) -> list[PushMessage]:
    return [PushMessage(to=f"ExponentPushToken[{i}]", title="t", body="b") for i in range(n)]


class TestIsPushToken:
    @pytest.mark.parametrize("token", ["ExponentPushToken[abc123]", "ExpoPushToken[xyz]"])
    def test_valid(self, token):
        assert is_push_token(token)

    @pytest.mark.parametrize("token", [None, "", "abc123", "ExponentPushToken[]", "ExponentPushToken[abc"])
    def test_invalid(self, token):
        assert not is_push_token(token)


class TestPushMessage:
    def test_payload_shape(self):
        msg = PushMessage(to="ExpoPushToken[x]", title="Just announced from Tresor", body="Klubnacht")
        assert msg.to_dict() == {
            "to": "ExpoPushToken[x]",
            "title": "Just announced from Tresor",
            "body": "Klubnacht",
            "sound": "default",
        }


class TestExpoPushClient:
    def test_chunks_of_one_hundred(self):
        session = _session([_ok([{"status": "ok"}] * 100), _ok([{"status": "ok"}] * 50)])
        tickets = ExpoPushClient(session=session).send(_messages(150))

        assert session.post.call_count == 2
        sizes = [len(c.kwargs["json"]) for c in session.post.call_args_list]
        assert sizes == [PUSH_CHUNK_SIZE, 50]
        assert len(tickets) == 150

    def test_nothing_to_send(self):
        session = _session()
        assert ExpoPushClient(session=session).send([]) == []
        session.post.assert_not_called()

    def test_failed_chunk_does_not_stop_the_rest(self):
        session = _session([requests.ConnectionError("down"), _ok([{"status": "ok"}])])
        tickets = ExpoPushClient(session=session).send(_messages(101))
        assert session.post.call_count == 2
        assert tickets == [{"status": "ok"}]

    def test_access_token_header(self):
        session = _session()
        ExpoPushClient(access_token="secret", session=session)
        assert session.headers["Authorization"] == "Bearer secret"
        assert session.headers["Content-Type"] == "application/json"

    def test_no_auth_header_without_token(self):
        session = _session()
        ExpoPushClient(session=session)
        assert "Authorization" not in session.headers


class TestFollowerNotifierDelivery:
    def _notifier(self, messages: list[PushMessage]) -> tuple[FollowerNotifier, MagicMock]:
        deliver = MagicMock()
        notifier = FollowerNotifier(conn=MagicMock(), deliver=deliver)
        notifier.build_messages = MagicMock(return_value=messages)
        return notifier, deliver

    def test_delivers_and_counts(self):
        notifier, deliver = self._notifier(_messages(3))
        notifier.on_link_created("event_artist", "e1", "p1")
        deliver.assert_called_once()
        assert notifier.sent == 3

    def test_no_followers_no_delivery(self):
        notifier, deliver = self._notifier([])
        notifier.on_link_created("event_venue", "e1", "p1")
        deliver.assert_not_called()
        assert notifier.sent == 0
