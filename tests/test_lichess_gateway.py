"""Tests for LichessGateway retry and error mapping."""

from datetime import timedelta
from unittest.mock import MagicMock

import berserk
import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import HTTPError, ReadTimeout

from errors import RemoteCallError
from lichess_gateway import FeedStream, LichessGateway, is_transient_net_err, to_ms


def _http_error(status, headers=None):
    response = MagicMock(status_code=status, headers=headers or {})
    return HTTPError(f"{status} error", response=response)


def _gateway(client, max_net_retries=3):
    sleeps = []
    return LichessGateway(client, reconnect_delay=5, max_net_retries=max_net_retries, sleep=sleeps.append), sleeps


class TestRetries:
    def test_429_honours_retry_after(self):
        client = MagicMock()
        client.account.get.side_effect = [_http_error(429, {"Retry-After": "7"}), {"id": "MyBot"}]
        gateway, sleeps = _gateway(client)

        assert gateway.account_id() == "mybot"
        assert sleeps == [7]

    def test_429_backoff_doubles_without_header(self):
        client = MagicMock()
        client.account.get.side_effect = [_http_error(429), _http_error(429), {"id": "x"}]
        gateway, sleeps = _gateway(client)

        gateway.account_id()
        assert sleeps == [60, 120]

    def test_transient_errors_retried_then_fail_without_status(self):
        client = MagicMock()
        client.bots.abort_game.side_effect = RequestsConnectionError("Connection reset by peer")
        gateway, sleeps = _gateway(client, max_net_retries=2)

        with pytest.raises(RemoteCallError) as info:
            gateway.abort_game("g1")
        assert info.value.status_code is None
        assert sleeps == [5, 5]
        assert client.bots.abort_game.call_count == 3

    def test_move_sent_once_on_lost_response(self):
        client = MagicMock()
        client.bots.make_move.side_effect = [ReadTimeout("read timed out"), _http_error(400)]
        gateway, sleeps = _gateway(client)

        with pytest.raises(RemoteCallError) as info:
            gateway.make_move("g1", "e2e4")
        assert info.value.status_code is None
        assert sleeps == []
        client.bots.make_move.assert_called_once_with("g1", "e2e4")

    def test_move_still_waits_out_429(self):
        client = MagicMock()
        client.bots.make_move.side_effect = [_http_error(429, {"Retry-After": "3"}), None]
        gateway, sleeps = _gateway(client)

        gateway.make_move("g1", "e2e4")
        assert sleeps == [3]
        assert client.bots.make_move.call_count == 2

    def test_client_error_not_retried(self):
        client = MagicMock()
        client.bots.make_move.side_effect = _http_error(400)
        gateway, sleeps = _gateway(client)

        with pytest.raises(RemoteCallError) as info:
            gateway.make_move("g1", "e2e4")
        assert info.value.status_code == 400
        assert sleeps == []


class TestCalls:
    def test_accept_reports_failure(self):
        client = MagicMock()
        client.bots.accept_challenge.side_effect = _http_error(404)
        gateway, _ = _gateway(client)
        assert gateway.accept_challenge("c1") is False

    def test_decline_passes_reason_and_swallows_errors(self):
        client = MagicMock()
        client.bots.decline_challenge.side_effect = _http_error(500)
        gateway, _ = _gateway(client)
        gateway.decline_challenge("c1", reason="tooFast")
        client.bots.decline_challenge.assert_called_once_with("c1", reason="tooFast")

    def test_is_online(self):
        client = MagicMock()
        client.users.get_realtime_statuses.return_value = [{"id": "mybot", "online": True}]
        gateway, _ = _gateway(client)
        assert gateway.is_online("MyBot")

    def test_online_bots_drained(self):
        client = MagicMock()
        client.bots.get_online_bots.return_value = iter([{"id": "a"}, {"id": "b"}])
        gateway, _ = _gateway(client)
        assert [b["id"] for b in gateway.online_bots()] == ["a", "b"]

    def test_rating(self):
        client = MagicMock()
        client.users.get_public_data.return_value = {"perfs": {"blitz": {"rating": 1612}}}
        gateway, _ = _gateway(client)
        assert gateway.rating("mybot", "blitz") == 1612
        assert gateway.rating("mybot", "bullet") is None


class TestHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [(None, None), (timedelta(seconds=3), 3000), (1500, 1500), (2.5, 2), ("700", 700), ("n/a", None)],
    )
    def test_to_ms(self, value, expected):
        assert to_ms(value) == expected

    def test_transient_detection(self):
        assert is_transient_net_err(RequestsConnectionError("boom"))
        assert is_transient_net_err(Exception("Remote end closed connection without response"))
        assert not is_transient_net_err(ValueError("bad move"))


def _session():
    session = MagicMock()
    session.hooks = {"response": []}
    return session


class TestFeedStream:
    def test_disconnect_closes_response_and_session(self):
        session = _session()
        stream = FeedStream(session, lambda client: iter(()))
        response = MagicMock()
        for hook in session.hooks["response"]:
            hook(response)

        stream.disconnect()
        response.close.assert_called_once()
        session.close.assert_called_once()

    def test_response_arriving_after_disconnect_is_closed(self):
        session = _session()
        stream = FeedStream(session, lambda client: iter(()))
        stream.disconnect()
        late = MagicMock()
        for hook in session.hooks["response"]:
            hook(late)
        late.close.assert_called_once()

    def test_events_come_from_own_client(self):
        session = _session()
        clients = []

        def open_events(client):
            clients.append(client)
            return iter([{"type": "gameFull"}])

        assert list(FeedStream(session, open_events)) == [{"type": "gameFull"}]
        assert isinstance(clients[0], berserk.Client)

    def test_each_stream_gets_a_fresh_session(self):
        sessions = []

        def factory():
            sessions.append(_session())
            return sessions[-1]

        gateway = LichessGateway(MagicMock(), session_factory=factory)
        streams = [gateway.stream_game_state("g1"), gateway.stream_incoming_events()]
        assert all(isinstance(s, FeedStream) for s in streams)
        assert len(sessions) == 2

    def test_without_factory_streams_use_shared_client(self):
        client = MagicMock()
        LichessGateway(client).stream_game_state("g1")
        client.bots.stream_game_state.assert_called_once_with("g1")
