"""
Live view of an Asterisk server over AMI.

:class:`AsteriskManager` seeds the channel and queue registries from bulk
Status/QueueStatus snapshots, then keeps them current from the event stream.
It resynchronizes after every reconnect and offers origination and version
queries correlated against the server's asynchronous replies.
"""

import asyncio
import logging
import os
import re
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .actions import CommandAction, OriginateAction, QueueStatusAction, StatusAction
from .channels import AsteriskChannel, ChannelManager
from .connection import ManagerConnection, ManagerConnectionPool
from .errors import CommandFailure, EventTimeoutError, NotConnectedError
from .events import (
    ConnectEvent, DisconnectEvent, HangupEvent, JoinEvent, LeaveEvent, LinkEvent,
    ManagerEvent, NewCallerIdEvent, NewChannelEvent, NewExtenEvent, NewStateEvent,
    OriginateResponseEvent, QueueEntryEvent, QueueMemberEvent, QueueParamsEvent,
    RenameEvent, StatusEvent, UnlinkEvent,
)
from .queues import AsteriskQueue, QueueManager

load_dotenv()
log = logging.getLogger(__name__)

__all__ = ['AsteriskManager', 'parse_revision']

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
SHOW_VERSION             = 'show version'
SHOW_VERSION_FILES       = 'show version files'
SHOW_VERSION_FILES_SKIP  = 2      # header lines before the file table
SHOW_VERSION_FILES_PATTERN = re.compile(r'^(\S+)\s+Revision: ([0-9.]+)')

# extra time for the OriginateResponse to arrive after the dial timeout
ORIGINATE_GRACE_MS = 2000

_CHANNEL_HANDLERS = {
    NewChannelEvent:  'handle_new_channel_event',
    NewExtenEvent:    'handle_new_exten_event',
    NewStateEvent:    'handle_new_state_event',
    NewCallerIdEvent: 'handle_new_caller_id_event',
    LinkEvent:        'handle_link_event',
    UnlinkEvent:      'handle_unlink_event',
    RenameEvent:      'handle_rename_event',
    HangupEvent:      'handle_hangup_event',
}

_QUEUE_HANDLERS = {
    JoinEvent:  'handle_join_event',
    LeaveEvent: 'handle_leave_event',
}

_QUEUE_SNAPSHOT_HANDLERS = {
    QueueParamsEvent: 'handle_queue_params_event',
    QueueMemberEvent: 'handle_queue_member_event',
    QueueEntryEvent:  'handle_queue_entry_event',
}


def parse_revision(revision: str) -> Tuple[int, ...]:
    """'1.2.x' -> (1, 2, 0). Segments that are not numbers count as 0."""
    parts = []
    for part in revision.split('.'):
        try:
            parts.append(int(part))
        except ValueError:
            parts.append(0)
    return tuple(parts)


def _env_flag(name: str) -> bool:
    return os.getenv(name, '').strip().lower() in ('true', '1', 'yes')


class AsteriskManager:
    """Facade keeping channels and queues of one Asterisk server in memory."""

    def __init__(self, connection: Optional[ManagerConnection] = None,
                 skip_queues: Optional[bool] = None):
        self.connection: Optional[ManagerConnection] = None
        self.connection_pool = ManagerConnectionPool()
        self.channel_manager = ChannelManager()
        self.queue_manager = QueueManager(self.channel_manager)

        # Queue initialization times out on Asterisk 1.0.x, which never
        # sends QueueStatusComplete; set this if queues are not needed.
        self.skip_queues = _env_flag('AMI_SKIP_QUEUES') if skip_queues is None else skip_queues

        # Lazily fetched, reset on every disconnect
        self.version: Optional[str] = None
        self.versions: Optional[Dict[str, str]] = None
        self._version_lock = asyncio.Lock()
        self._versions_lock = asyncio.Lock()

        if connection is not None:
            self.set_manager_connection(connection)

    def set_manager_connection(self, connection: ManagerConnection):
        if self.connection is not None and self.connection is not connection:
            self.connection.remove_event_listener(self.on_manager_event)
        self.connection = connection
        self.connection_pool.clear()
        self.connection_pool.add(connection)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self):
        """
        Log in if needed, load current channels and queues, then subscribe
        to live events.

        Safe to call again: the snapshots are replayed idempotently and the
        subscription is only registered once.
        """
        if self.connection is None:
            raise NotConnectedError("No manager connection configured")
        if not self.connection.is_connected():
            await self.connection.login()

        await self._initialize_channels()
        await self._initialize_queues()

        self.connection.add_event_listener(self.on_manager_event)
        log.info("Initialized: %d channel(s), %d queue(s)",
                 len(self.channel_manager), len(self.queue_manager))

    async def shutdown(self):
        if self.connection is None:
            return
        self.connection.remove_event_listener(self.on_manager_event)
        await self.connection.logoff()

    async def _initialize_channels(self):
        resp_events = await self.connection.send_event_generating_action(StatusAction())
        if not resp_events.complete:
            raise EventTimeoutError("Timeout waiting for StatusComplete", partial=resp_events)
        for event in resp_events.events:
            if isinstance(event, StatusEvent):
                self.channel_manager.handle_status_event(event)

    async def _initialize_queues(self):
        if self.skip_queues:
            return

        resp_events = await self.connection.send_event_generating_action(QueueStatusAction())
        if not resp_events.complete:
            # Asterisk 1.0.x never sends QueueStatusComplete
            log.warning("QueueStatus incomplete, using %d event(s) received so far", len(resp_events.events))

        for event in resp_events.events:
            handler = _QUEUE_SNAPSHOT_HANDLERS.get(type(event))
            if handler:
                getattr(self.queue_manager, handler)(event)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------
    async def on_manager_event(self, event: ManagerEvent):
        """Route one live event to the registry that owns it; unknown shapes are ignored."""
        if isinstance(event, ConnectEvent):
            await self._handle_connect_event(event)
            return
        if isinstance(event, DisconnectEvent):
            self._handle_disconnect_event(event)
            return

        handler = _CHANNEL_HANDLERS.get(type(event))
        if handler:
            getattr(self.channel_manager, handler)(event)
            return

        handler = _QUEUE_HANDLERS.get(type(event))
        if handler:
            getattr(self.queue_manager, handler)(event)

    def _handle_disconnect_event(self, event: DisconnectEvent):
        # version may change while Asterisk restarts
        self.version = None
        self.versions = None

        # reloaded on reconnect
        self.channel_manager.clear()
        self.queue_manager.clear()
        log.warning("Disconnected from AMI, cleared live state")

    async def _handle_connect_event(self, event: ConnectEvent):
        try:
            await self._initialize_channels()
        except Exception as e:
            log.error("Unable to initialize channels after reconnect: %s", e)

        try:
            await self._initialize_queues()
        except Exception as e:
            log.error("Unable to initialize queues after reconnect: %s", e)

    # ------------------------------------------------------------------
    # Origination
    # ------------------------------------------------------------------
    async def originate_to_extension(self, channel: str, context: str, exten: str, priority: int,
                                     timeout: int, variables: Optional[Dict[str, str]] = None
                                     ) -> Optional[AsteriskChannel]:
        """Dial *channel* and connect it to context/exten/priority. *timeout* is in ms."""
        return await self._originate(OriginateAction(
            channel, context=context, exten=exten, priority=priority,
            timeout=timeout, variables=variables))

    async def originate_to_application(self, channel: str, application: str, data: str,
                                       timeout: int, variables: Optional[Dict[str, str]] = None
                                       ) -> Optional[AsteriskChannel]:
        """Dial *channel* and run *application* with *data* on it. *timeout* is in ms."""
        return await self._originate(OriginateAction(
            channel, application=application, data=data,
            timeout=timeout, variables=variables))

    async def _originate(self, action: OriginateAction) -> Optional[AsteriskChannel]:
        response_events = await self.connection_pool.send_event_generating_action(
            action, (action.timeout + ORIGINATE_GRACE_MS) / 1000.0)

        # None is a normal outcome: not answered, or failed before confirmation
        if response_events.events:
            first = response_events.events[0]
            if isinstance(first, OriginateResponseEvent):
                return self.get_channel_by_id(first.uniqueid)
        return None

    # ------------------------------------------------------------------
    # Registry accessors
    # ------------------------------------------------------------------
    def get_channels(self) -> List[AsteriskChannel]:
        return self.channel_manager.get_channels()

    def get_channel_by_name(self, name: str) -> Optional[AsteriskChannel]:
        return self.channel_manager.get_channel_by_name(name)

    def get_channel_by_id(self, uniqueid: str) -> Optional[AsteriskChannel]:
        return self.channel_manager.get_channel_by_id(uniqueid)

    def get_queues(self) -> List[AsteriskQueue]:
        return self.queue_manager.get_queues()

    # ------------------------------------------------------------------
    # Version
    # ------------------------------------------------------------------
    async def _command(self, command: str) -> List[str]:
        if self.connection is None:
            raise NotConnectedError("No manager connection configured")
        resp = await self.connection.send_action(CommandAction(command))
        if resp.is_error:
            raise CommandFailure(command, resp.message)
        return resp.output

    async def get_version(self) -> str:
        """
        First line of ``show version``, fetched once per connection.

        Version is informational only: any failure is logged and an empty
        string returned.
        """
        async with self._version_lock:
            if self.version is None:
                try:
                    result = await self._command(SHOW_VERSION)
                except Exception as e:
                    log.warning("Unable to send '%s' command: %s", SHOW_VERSION, e)
                    return ''
                if result:
                    self.version = result[0]
            return self.version or ''

    async def _get_versions(self) -> Dict[str, str]:
        async with self._versions_lock:
            if self.versions is None:
                try:
                    result = await self._command(SHOW_VERSION_FILES)
                except Exception as e:
                    log.warning("Unable to send '%s' command: %s", SHOW_VERSION_FILES, e)
                    return {}
                versions = {}
                for line in result[SHOW_VERSION_FILES_SKIP:]:
                    m = SHOW_VERSION_FILES_PATTERN.search(line)
                    if m:
                        versions[m.group(1)] = m.group(2)
                self.versions = versions
            return self.versions

    async def get_file_version(self, file: str) -> Optional[Tuple[int, ...]]:
        """
        Revision of one source *file* as reported by ``show version files``,
        e.g. ``chan_sip.c`` -> (1, 234). None if the file is not listed or
        the command failed.
        """
        revision = (await self._get_versions()).get(file)
        if revision is None:
            return None
        return parse_revision(revision)
