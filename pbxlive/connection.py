"""
Asterisk Manager Interface connection.

One TCP session to AMI. A reader task splits the stream into frames and
routes them: responses and events carrying the ActionID of an outstanding
action go to that action, everything else is queued for a separate delivery
task that hands events to listeners in arrival order. Listeners therefore
never run on the reader task and may await further actions.
"""

import asyncio
import itertools
import logging
import os
from typing import Callable, Dict, List, Optional

from dotenv import load_dotenv

from .actions import (
    AMI_RESPONSE_END, LoginAction, LogoffAction, ManagerAction, ManagerResponse,
    ResponseEvents, _parse, parse_response,
)
from .errors import (
    AuthenticationError, ManagerCommunicationError, ManagerError,
    ManagerTimeoutError, NotConnectedError,
)
from .events import ConnectEvent, DisconnectEvent, ManagerEvent, parse_event

load_dotenv()
log = logging.getLogger(__name__)

__all__ = ['ManagerConnection', 'ManagerConnectionPool', 'AMI_TIMEOUT', 'EVENT_TIMEOUT']

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
AMI_TIMEOUT     = 5.0
EVENT_TIMEOUT   = 10.0
STREAM_LIMIT    = 2 ** 20   # "show version files" output easily exceeds asyncio's 64k default
_FRAME_END      = AMI_RESPONSE_END.encode()

EventListener = Callable[[ManagerEvent], object]


class _PendingAction:
    """Collects the response (and follow-up events) for one ActionID."""

    __slots__ = ('action', 'collect_events', 'response', 'events', 'done')

    def __init__(self, action: ManagerAction, collect_events: bool):
        self.action = action
        self.collect_events = collect_events
        self.response: Optional[ManagerResponse] = None
        self.events: List[ManagerEvent] = []
        self.done: asyncio.Future = asyncio.get_running_loop().create_future()

    def finish(self):
        if not self.done.done():
            self.done.set_result(None)

    def fail(self, exc: Exception):
        if not self.done.done():
            self.done.set_exception(exc)
            # retrieved by the waiter, or nobody is waiting anymore
            self.done.exception()


class ManagerConnection:
    """Async AMI client connection with transparent reconnect."""

    def __init__(self, host=None, port=None, username=None, secret=None,
                 reconnect: bool = True, reconnect_delay: Optional[float] = None):
        self.host     = host     or os.getenv('AMI_HOST', '127.0.0.1')
        self.port     = port     or int(os.getenv('AMI_PORT', '5038'))
        self.username = username or os.getenv('AMI_USERNAME', '')
        self.secret   = secret   or os.getenv('AMI_SECRET', '')
        self.reconnect = reconnect
        self.reconnect_delay = (reconnect_delay if reconnect_delay is not None
                                else float(os.getenv('AMI_RECONNECT_DELAY', '5')))

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False
        self.protocol_identifier = ''

        self._logged_off = False
        self._reader_task: Optional[asyncio.Task] = None
        self._delivery_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._pending: Dict[str, _PendingAction] = {}
        self._listeners: List[EventListener] = []
        self._event_queue: asyncio.Queue = asyncio.Queue()
        self._ids = itertools.count(1)
        self._id_prefix = f"{id(self):x}"

    def __repr__(self):
        return f"ManagerConnection({self.username}@{self.host}:{self.port})"

    def is_connected(self) -> bool:
        return self.connected

    # ------------------------------------------------------------------
    # Login / logoff
    # ------------------------------------------------------------------
    async def login(self, timeout: float = AMI_TIMEOUT):
        """
        Connect and authenticate.

        Raises AuthenticationError when the credentials are rejected,
        ManagerTimeoutError or ManagerCommunicationError otherwise.
        """
        self._logged_off = False
        await self._connect_and_login(timeout)
        if self._delivery_task is None or self._delivery_task.done():
            self._delivery_task = asyncio.create_task(self._deliver_events())
        log.info("Connected & authenticated to AMI at %s:%d", self.host, self.port)

    async def logoff(self):
        """Log off and stop reconnecting."""
        self._logged_off = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        if self.connected:
            try:
                await self.send_action(LogoffAction())
            except ManagerError as e:
                log.debug("Logoff failed: %s", e)

        await self._close_transport()

        if self._delivery_task and not self._delivery_task.done():
            self._delivery_task.cancel()
            try:
                await self._delivery_task
            except asyncio.CancelledError:
                pass
        self._delivery_task = None

    async def _connect_and_login(self, timeout: float):
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port, limit=STREAM_LIMIT), timeout)
            banner = await asyncio.wait_for(self.reader.readline(), timeout)
        except asyncio.TimeoutError as e:
            await self._close_transport()
            raise ManagerTimeoutError(f"Timeout connecting to AMI at {self.host}:{self.port}") from e
        except OSError as e:
            await self._close_transport()
            raise ManagerCommunicationError(f"Unable to connect to AMI at {self.host}:{self.port}: {e}") from e

        self.protocol_identifier = banner.decode('utf-8', errors='ignore').strip()
        self._reader_task = asyncio.create_task(self._read_frames())

        try:
            resp = await self.send_action(LoginAction(self.username, self.secret), timeout)
        except ManagerError:
            await self._close_transport()
            raise
        if resp.is_error:
            await self._close_transport()
            raise AuthenticationError(resp.message or 'Authentication failed')
        self.connected = True

    async def _close_transport(self):
        self.connected = False
        task, self._reader_task = self._reader_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (OSError, ConnectionError):
                pass
        self.reader = None
        self.writer = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    async def _dispatch(self, action: ManagerAction, collect_events: bool) -> _PendingAction:
        if not self.writer:
            raise NotConnectedError(f"Not connected to AMI at {self.host}:{self.port}")

        action.action_id = f"{self._id_prefix}_{next(self._ids)}"
        pending = _PendingAction(action, collect_events)
        self._pending[action.action_id] = pending
        try:
            async with self._write_lock:
                self.writer.write(action.to_wire().encode())
                await self.writer.drain()
        except (OSError, ConnectionError) as e:
            self._pending.pop(action.action_id, None)
            raise ManagerCommunicationError(f"Send {action.name} failed: {e}") from e
        return pending

    async def send_action(self, action: ManagerAction, timeout: float = AMI_TIMEOUT) -> ManagerResponse:
        """Send *action* and wait for its response."""
        pending = await self._dispatch(action, collect_events=False)
        try:
            await asyncio.wait_for(pending.done, timeout)
        except asyncio.TimeoutError:
            raise ManagerTimeoutError(f"Timeout waiting for response to {action.name}") from None
        finally:
            self._pending.pop(action.action_id, None)
        return pending.response

    async def send_event_generating_action(self, action: ManagerAction,
                                           timeout: float = EVENT_TIMEOUT) -> ResponseEvents:
        """
        Send *action* and collect the events it generates.

        Collection ends with the action's completion event or an error
        response. When *timeout* passes first the partial batch is returned
        with ``complete=False``; deciding whether that is acceptable is up to
        the caller.
        """
        if not action.complete_event:
            raise ValueError(f"{action.name} does not generate events")

        pending = await self._dispatch(action, collect_events=True)
        complete = True
        try:
            await asyncio.wait_for(pending.done, timeout)
        except asyncio.TimeoutError:
            log.warning("%s: Timeout waiting for %s", action.name, action.complete_event)
            complete = False
        finally:
            self._pending.pop(action.action_id, None)
        return ResponseEvents(pending.response, list(pending.events), complete)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_event_listener(self, listener: EventListener):
        """Register *listener*; registering the same listener twice is a no-op."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_event_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Reader / delivery tasks
    # ------------------------------------------------------------------
    async def _read_frames(self):
        try:
            while True:
                data = await self.reader.readuntil(_FRAME_END)
                self._handle_frame(data.decode('utf-8', errors='ignore'))
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, OSError) as e:
            if not self._logged_off:
                log.warning("AMI connection closed: %s", e or type(e).__name__)
        self._connection_lost()

    def _handle_frame(self, raw: str):
        first = raw.lstrip().split('\r\n', 1)[0]
        key = first.partition(':')[0].strip()

        if key == 'Response':
            resp = parse_response(raw)
            pending = self._pending.get(resp.action_id)
            if pending is None:
                log.debug("Dropping response for unknown ActionID %r", resp.action_id)
                return
            pending.response = resp
            if not pending.collect_events or resp.is_error:
                pending.finish()
            return

        if key != 'Event':
            log.debug("Ignoring unexpected frame: %r", first)
            return

        event = parse_event(_parse(raw))
        pending = self._pending.get(event.action_id) if event.action_id else None
        if pending is not None and pending.collect_events:
            pending.events.append(event)
            if pending.action.is_complete(event):
                pending.finish()
            return
        self._event_queue.put_nowait(event)

    async def _deliver_events(self):
        while True:
            event = await self._event_queue.get()
            for listener in list(self._listeners):
                try:
                    if asyncio.iscoroutinefunction(listener):
                        await listener(event)
                    else:
                        listener(event)
                except Exception as e:
                    log.error("Event listener error on %s: %s", event.name, e)

    # ------------------------------------------------------------------
    # Disconnect / reconnect
    # ------------------------------------------------------------------
    def _connection_lost(self):
        was_connected = self.connected
        self.connected = False
        self._reader_task = None
        if self.writer:
            self.writer.close()
        self.reader = None
        self.writer = None

        for pending in self._pending.values():
            pending.fail(ManagerCommunicationError("Connection to AMI lost"))
        self._pending.clear()

        if self._logged_off or not was_connected:
            return
        self._event_queue.put_nowait(DisconnectEvent({'Event': 'Disconnect'}))
        if self.reconnect:
            self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        attempt = 0
        while not self._logged_off:
            attempt += 1
            await asyncio.sleep(self.reconnect_delay)
            try:
                await self._connect_and_login(AMI_TIMEOUT)
            except AuthenticationError as e:
                log.error("Reconnect to AMI at %s:%d rejected, giving up: %s", self.host, self.port, e)
                return
            except ManagerError as e:
                log.warning("Reconnect attempt %d to %s:%d failed: %s", attempt, self.host, self.port, e)
                continue
            log.info("Reconnected to AMI at %s:%d after %d attempt(s)", self.host, self.port, attempt)
            self._event_queue.put_nowait(ConnectEvent({
                'Event': 'Connect',
                'ProtocolIdentifier': self.protocol_identifier,
            }))
            return


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------
class ManagerConnectionPool:
    """
    Hands out connections one caller at a time.

    Waiting for a free connection counts against the action's deadline.
    """

    def __init__(self):
        self._connections: List[ManagerConnection] = []
        self._idle: asyncio.Queue = asyncio.Queue()

    def __len__(self):
        return len(self._connections)

    def add(self, connection: ManagerConnection):
        self._connections.append(connection)
        self._idle.put_nowait(connection)

    def clear(self):
        self._connections.clear()
        self._idle = asyncio.Queue()

    async def _acquire(self, timeout: float) -> ManagerConnection:
        if not self._connections:
            raise NotConnectedError("No connection in pool")
        try:
            return await asyncio.wait_for(self._idle.get(), timeout)
        except asyncio.TimeoutError:
            raise ManagerTimeoutError("Timeout waiting for a pooled connection") from None

    def _release(self, connection: ManagerConnection):
        if connection in self._connections:
            self._idle.put_nowait(connection)

    async def send_action(self, action: ManagerAction, timeout: float = AMI_TIMEOUT) -> ManagerResponse:
        loop = asyncio.get_running_loop()
        start = loop.time()
        connection = await self._acquire(timeout)
        try:
            return await connection.send_action(action, max(0.0, timeout - (loop.time() - start)))
        finally:
            self._release(connection)

    async def send_event_generating_action(self, action: ManagerAction,
                                           timeout: float = EVENT_TIMEOUT) -> ResponseEvents:
        loop = asyncio.get_running_loop()
        start = loop.time()
        connection = await self._acquire(timeout)
        try:
            return await connection.send_event_generating_action(
                action, max(0.0, timeout - (loop.time() - start)))
        finally:
            self._release(connection)
