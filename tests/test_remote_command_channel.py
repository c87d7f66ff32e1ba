"""
Tests for call_bridge/remote_command_channel.py
The Socket.IO client is replaced by FakeSocketClient; the supervisor thread is real.
"""

import pytest

from call_bridge.call_session import DialRequest
from call_bridge.remote_command_channel import RemoteCommandChannel, parse_dial_request
from fakes import SocketClientFactory, wait_until


@pytest.fixture
def received():
    return []


def make_channel(factory, received, **kwargs):
    kwargs.setdefault('reconnect_base_delay', 0.01)
    kwargs.setdefault('reconnect_max_delay', 0.05)
    return RemoteCommandChannel(
        server_url="https://crm.example.com/",
        on_dial_request=received.append,
        client_factory=factory,
        **kwargs
    )


class TestParseDialRequest:

    def test_valid_payload(self):
        assert parse_dial_request({'phoneNumber': ' +15551234567 ', 'callId': 9}) == \
            DialRequest(phone_number='+15551234567', call_id='9')

    @pytest.mark.parametrize("payload", [
        None,
        "dial +15551234567",
        {},
        {'phoneNumber': '+15551234567'},
        {'callId': 'srv-9'},
        {'phoneNumber': '', 'callId': 'srv-9'},
        {'phoneNumber': '+15551234567', 'callId': '  '},
    ])
    def test_malformed_payload(self, payload):
        assert parse_dial_request(payload) is None


class TestConnection:

    def test_connect_announces_presence(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)

        channel.open("user-42", token="tok")
        assert wait_until(lambda: channel.is_connected)

        client = factory.latest
        assert client.connect_calls[0]['url'] == "https://crm.example.com?userId=user-42"
        assert client.connect_calls[0]['headers'] == {'Authorization': 'Bearer tok'}
        assert client.emitted == [('join_room', 'user-42')]
        channel.close()

    def test_reconnect_announces_presence_again(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        factory.latest.server_drop()
        assert wait_until(lambda: len(factory.clients) == 2 and channel.is_connected)

        assert factory.clients[1].emitted == [('join_room', 'user-42')]
        assert channel.get_stats()['connects'] == 2
        assert channel.get_stats()['disconnects'] == 1
        channel.close()

    def test_connect_failures_are_retried(self, received):
        factory = SocketClientFactory(fail_connects=3)
        channel = make_channel(factory, received)

        channel.open("user-42")

        assert wait_until(lambda: channel.is_connected)
        assert len(factory.clients) == 4
        assert channel.get_stats()['connect_failures'] == 3
        channel.close()

    def test_open_same_user_is_idempotent(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        channel.open("user-42")

        assert len(factory.clients) == 1
        channel.close()

    def test_close_stops_reconnecting(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        channel.close()

        assert not channel.is_connected
        assert factory.latest.disconnect_calls >= 1
        assert len(factory.clients) == 1

    def test_backoff_is_capped(self):
        channel = RemoteCommandChannel(reconnect_base_delay=1.0, reconnect_max_delay=8.0)
        assert [channel.reconnect_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 8.0]


class TestMessages:

    def test_dial_request_forwarded(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        factory.latest.server_emit('dial_request', {'phoneNumber': '+15551234567', 'callId': 'srv-9'})

        assert received == [DialRequest(phone_number='+15551234567', call_id='srv-9')]
        channel.close()

    def test_malformed_dial_request_dropped(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        factory.latest.server_emit('dial_request', {'phoneNumber': '+15551234567'})

        assert received == []
        assert channel.get_stats()['malformed_messages'] == 1
        channel.close()

    def test_handler_error_does_not_break_channel(self):
        def boom(request):
            raise RuntimeError("handler exploded")

        factory = SocketClientFactory()
        channel = RemoteCommandChannel(on_dial_request=boom, client_factory=factory)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        factory.latest.server_emit('dial_request', {'phoneNumber': '1', 'callId': '2'})

        assert channel.is_connected
        channel.close()

    def test_notify_when_connected(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)
        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)

        assert channel.notify('call_status', {'callId': 'srv-9', 'status': 'uploaded'})
        assert factory.latest.emitted[-1] == ('call_status', {'callId': 'srv-9', 'status': 'uploaded'})
        channel.close()

    def test_notify_failures_return_false(self, received):
        factory = SocketClientFactory()
        channel = make_channel(factory, received)

        assert not channel.notify('call_status', {})

        channel.open("user-42")
        assert wait_until(lambda: channel.is_connected)
        factory.latest.emit_error = RuntimeError("transport closed")

        assert not channel.notify('call_status', {})
        assert channel.get_stats()['notifications_dropped'] == 2
        channel.close()
