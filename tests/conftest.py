"""
Shared pytest fixtures.

Provides an in-memory stand-in for ManagerConnection and helpers to build
AMI events as the connection would parse them.
"""

from unittest.mock import AsyncMock

import pytest

from pbxlive.actions import ManagerResponse, ResponseEvents
from pbxlive.events import parse_event
from pbxlive.manager import AsteriskManager


def make_event(name, **fields):
    """Build an event the way the connection does from parsed headers."""
    return parse_event({'Event': name, **fields})


class FakeConnection:
    """
    Mock ManagerConnection.

    - ``batches``: action name -> ResponseEvents (or an exception to raise)
    - ``commands``: CLI command -> list of output lines (or an exception)
    """

    def __init__(self, connected=True):
        self.connected = connected
        self.batches = {}
        self.commands = {}
        self.listeners = []
        self.login = AsyncMock(side_effect=self._login)
        self.logoff = AsyncMock()
        self.send_event_generating_action = AsyncMock(side_effect=self._send_event_generating_action)
        self.send_action = AsyncMock(side_effect=self._send_action)

    def is_connected(self):
        return self.connected

    async def _login(self, *args, **kwargs):
        self.connected = True

    async def _send_event_generating_action(self, action, timeout=None):
        result = self.batches.get(action.name, ResponseEvents(events=[], complete=True))
        if isinstance(result, Exception):
            raise result
        return result

    async def _send_action(self, action, timeout=None):
        result = self.commands.get(action.params.get('Command'))
        if isinstance(result, Exception):
            raise result
        if result is None:
            return ManagerResponse({'Response': 'Error', 'Message': 'Command not found'})
        return ManagerResponse({'Response': 'Follows'}, list(result))

    def add_event_listener(self, listener):
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_event_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def sent_action_names(self):
        return [c.args[0].name for c in self.send_event_generating_action.call_args_list]


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def manager(fake_connection):
    return AsteriskManager(fake_connection, skip_queues=False)
