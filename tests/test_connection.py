"""
Tests for ManagerConnection against an in-process AMI server.
"""

import asyncio

import pytest

from pbxlive.actions import CommandAction, QueueStatusAction, StatusAction
from pbxlive.connection import ManagerConnection
from pbxlive.errors import AuthenticationError, ManagerCommunicationError
from pbxlive.events import ConnectEvent, DisconnectEvent, NewChannelEvent, StatusEvent

BANNER = b"Asterisk Call Manager/1.1\r\n"


def _frame(**fields) -> bytes:
    return ''.join(f"{k}: {v}\r\n" for k, v in fields.items()).encode() + b"\r\n"


class FakeAmiServer:
    """
    Minimal AMI server on localhost.

    ``handlers`` maps an action name to ``handler(headers, writer)``.
    """

    def __init__(self, secret='secret'):
        self.secret = secret
        self.handlers = {}
        self.clients = []
        self.logins = 0
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self._client, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self):
        self.drop_clients()
        self.server.close()
        try:
            await asyncio.wait_for(self.server.wait_closed(), 1)
        except asyncio.TimeoutError:
            pass

    def drop_clients(self):
        for writer in self.clients:
            writer.close()
        self.clients.clear()

    async def _client(self, reader, writer):
        self.clients.append(writer)
        writer.write(BANNER)
        try:
            while True:
                data = await reader.readuntil(b"\r\n\r\n")
                headers = {}
                for line in data.decode().split("\r\n"):
                    k, sep, v = line.partition(':')
                    if sep:
                        headers[k.strip()] = v.strip()
                await self._handle(headers, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass

    async def _handle(self, headers, writer):
        action = headers.get('Action')
        action_id = headers.get('ActionID', '')
        if action == 'Login':
            if headers.get('Secret') == self.secret:
                self.logins += 1
                writer.write(_frame(Response='Success', ActionID=action_id, Message='Authentication accepted'))
            else:
                writer.write(_frame(Response='Error', ActionID=action_id, Message='Authentication failed'))
        elif action == 'Logoff':
            writer.write(_frame(Response='Goodbye', ActionID=action_id, Message='Thanks for all the fish.'))
        elif action in self.handlers:
            self.handlers[action](headers, writer)
        else:
            writer.write(_frame(Response='Error', ActionID=action_id, Message='Invalid/unknown command'))
        await writer.drain()


@pytest.fixture
async def ami_server():
    server = FakeAmiServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def connection(ami_server):
    conn = ManagerConnection('127.0.0.1', ami_server.port, 'admin', 'secret', reconnect_delay=0.05)
    yield conn
    await conn.logoff()


@pytest.mark.asyncio
async def test_login(connection):
    await connection.login()

    assert connection.is_connected()
    assert connection.protocol_identifier == 'Asterisk Call Manager/1.1'


@pytest.mark.asyncio
async def test_login_rejected(ami_server):
    conn = ManagerConnection('127.0.0.1', ami_server.port, 'admin', 'wrong')

    with pytest.raises(AuthenticationError):
        await conn.login()

    assert not conn.is_connected()
    await conn.logoff()


@pytest.mark.asyncio
async def test_connection_refused():
    server = await asyncio.start_server(lambda r, w: None, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    conn = ManagerConnection('127.0.0.1', port, 'admin', 'secret')
    with pytest.raises(ManagerCommunicationError):
        await conn.login(timeout=1)


@pytest.mark.asyncio
async def test_status_collects_correlated_events(ami_server, connection):
    def status(headers, writer):
        aid = headers['ActionID']
        writer.write(_frame(Response='Success', ActionID=aid, Message='Channel status will follow'))
        writer.write(_frame(Event='Status', ActionID=aid, Channel='SIP/100-0001', Uniqueid='1.1', State='Up'))
        writer.write(_frame(Event='Newchannel', Channel='SIP/300-0003', Uniqueid='3.3'))
        writer.write(_frame(Event='Status', ActionID=aid, Channel='SIP/200-0002', Uniqueid='1.2', State='Up'))
        writer.write(_frame(Event='StatusComplete', ActionID=aid, Items='2'))

    ami_server.handlers['Status'] = status
    received = []
    got_event = asyncio.Event()

    def listener(event):
        received.append(event)
        got_event.set()

    connection.add_event_listener(listener)
    await connection.login()

    result = await connection.send_event_generating_action(StatusAction(), timeout=2)

    assert result.complete
    assert result.response.response == 'Success'
    assert [type(e) for e in result.events[:2]] == [StatusEvent, StatusEvent]
    assert [e.uniqueid for e in result.events[:2]] == ['1.1', '1.2']
    assert result.events[-1].name == 'StatusComplete'

    await asyncio.wait_for(got_event.wait(), 1)
    assert len(received) == 1
    assert isinstance(received[0], NewChannelEvent)


@pytest.mark.asyncio
async def test_partial_batch_on_timeout(ami_server, connection):
    def queue_status(headers, writer):
        aid = headers['ActionID']
        writer.write(_frame(Response='Success', ActionID=aid, Message='Queue status will follow'))
        writer.write(_frame(Event='QueueParams', ActionID=aid, Queue='support'))
        # no QueueStatusComplete, as on Asterisk 1.0.x

    ami_server.handlers['QueueStatus'] = queue_status
    await connection.login()

    result = await connection.send_event_generating_action(QueueStatusAction(), timeout=0.2)

    assert not result.complete
    assert [e.name for e in result.events] == ['QueueParams']


@pytest.mark.asyncio
async def test_error_response_ends_collection(connection):
    await connection.login()

    result = await connection.send_event_generating_action(StatusAction(), timeout=2)

    assert result.complete
    assert result.response.is_error
    assert result.events == []


@pytest.mark.asyncio
async def test_command_output(ami_server, connection):
    def command(headers, writer):
        writer.write(
            f"Response: Follows\r\nPrivilege: Command\r\nActionID: {headers['ActionID']}\r\n"
            "Asterisk 1.4.21 built by root\n--END COMMAND--\r\n\r\n".encode())

    ami_server.handlers['Command'] = command
    await connection.login()

    resp = await connection.send_action(CommandAction('show version'), timeout=2)

    assert resp.output == ['Asterisk 1.4.21 built by root']


@pytest.mark.asyncio
async def test_listener_registered_once(connection):
    def listener(event):
        pass

    connection.add_event_listener(listener)
    connection.add_event_listener(listener)
    assert connection._listeners == [listener]

    connection.remove_event_listener(listener)
    connection.remove_event_listener(listener)
    assert connection._listeners == []


@pytest.mark.asyncio
async def test_reconnect_emits_disconnect_then_connect(ami_server, connection):
    received = []
    reconnected = asyncio.Event()

    async def listener(event):
        received.append(type(event))
        if isinstance(event, ConnectEvent):
            reconnected.set()

    connection.add_event_listener(listener)
    await connection.login()

    ami_server.drop_clients()
    await asyncio.wait_for(reconnected.wait(), 2)

    assert received == [DisconnectEvent, ConnectEvent]
    assert connection.is_connected()
    assert ami_server.logins == 2


@pytest.mark.asyncio
async def test_pending_action_fails_on_disconnect(ami_server, connection):
    ami_server.handlers['Status'] = lambda headers, writer: ami_server.drop_clients()
    await connection.login()

    with pytest.raises(ManagerCommunicationError):
        await connection.send_event_generating_action(StatusAction(), timeout=2)
