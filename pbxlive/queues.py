"""
Live queue registry: queue parameters, members and waiting callers.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .channels import AsteriskChannel, ChannelManager
from .events import (
    JoinEvent, LeaveEvent, QueueEntryEvent, QueueMemberEvent, QueueParamsEvent,
)

log = logging.getLogger(__name__)

# Queue member device status map
# See: https://wiki.asterisk.org/wiki/display/AST/Asterisk+11+ManagerEvent_QueueMemberStatus
QUEUE_MEMBER_STATUS_MAP = {
    0: 'Unknown',
    1: 'Not in use',
    2: 'In use',
    3: 'Busy',
    4: 'Invalid',
    5: 'Unavailable',
    6: 'Ringing',
    7: 'Ring+In use',
    8: 'On Hold',
}


@dataclass
class QueueMember:
    location: str
    name: str = ''
    membership: str = 'static'
    penalty: int = 0
    calls_taken: int = 0
    last_call: int = 0
    status: int = 0
    paused: bool = False

    @property
    def dynamic(self) -> bool:
        # only dynamic members can be removed via AMI
        return self.membership == 'dynamic'

    def to_dict(self) -> Dict:
        return {
            'interface': self.location,
            'membername': self.name or self.location,
            'membership': self.membership,
            'penalty': self.penalty,
            'calls_taken': self.calls_taken,
            'status': QUEUE_MEMBER_STATUS_MAP.get(self.status, f'Unknown ({self.status})'),
            'paused': self.paused,
            'dynamic': self.dynamic,
        }


@dataclass
class QueueEntry:
    """A caller waiting in a queue."""

    uniqueid: str
    channel_name: str
    position: int = 0
    caller_id_number: str = ''
    caller_id_name: str = ''
    date_joined: datetime = field(default_factory=datetime.now)
    channel: Optional[AsteriskChannel] = None

    def to_dict(self) -> Dict:
        return {
            'uniqueid': self.uniqueid,
            'channel': self.channel_name,
            'position': self.position,
            'callerid': self.caller_id_number or 'Unknown',
            'entry_time': self.date_joined.isoformat(),
        }


@dataclass
class AsteriskQueue:
    name: str
    max: int = 0
    strategy: str = ''
    service_level: int = 0
    weight: int = 0
    calls: int = 0
    hold_time: int = 0
    talk_time: int = 0
    completed: int = 0
    abandoned: int = 0
    members: Dict[str, QueueMember] = field(default_factory=dict)
    entries: List[QueueEntry] = field(default_factory=list)

    def find_entry(self, uniqueid: str, channel_name: str = '') -> Optional[QueueEntry]:
        for entry in self.entries:
            if (uniqueid and entry.uniqueid == uniqueid) or (channel_name and entry.channel_name == channel_name):
                return entry
        return None

    def add_entry(self, entry: QueueEntry):
        existing = self.find_entry(entry.uniqueid, entry.channel_name)
        if existing:
            self.entries.remove(existing)
        # position is 1-based; unknown or past-the-end positions go last
        index = entry.position - 1 if entry.position > 0 else len(self.entries)
        self.entries.insert(min(index, len(self.entries)), entry)
        self._renumber()

    def remove_entry(self, uniqueid: str, channel_name: str = '') -> Optional[QueueEntry]:
        entry = self.find_entry(uniqueid, channel_name)
        if entry:
            self.entries.remove(entry)
            self._renumber()
        return entry

    def _renumber(self):
        for i, entry in enumerate(self.entries, 1):
            entry.position = i

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'strategy': self.strategy,
            'max': self.max,
            'calls_waiting': len(self.entries),
            'hold_time': self.hold_time,
            'talk_time': self.talk_time,
            'completed': self.completed,
            'abandoned': self.abandoned,
            'members': {k: m.to_dict() for k, m in self.members.items()},
            'entries': [e.to_dict() for e in self.entries],
        }


class QueueManager:
    """Queue registry fed by QueueStatus snapshots and Join/Leave events."""

    def __init__(self, channel_manager: ChannelManager):
        self.channel_manager = channel_manager
        self._queues: Dict[str, AsteriskQueue] = {}

    def __len__(self):
        return len(self._queues)

    def get_queues(self) -> List[AsteriskQueue]:
        return list(self._queues.values())

    def get_queue(self, name: str) -> Optional[AsteriskQueue]:
        return self._queues.get(name)

    def clear(self):
        self._queues.clear()

    def _queue(self, name: str) -> AsteriskQueue:
        queue = self._queues.get(name)
        if queue is None:
            queue = self._queues[name] = AsteriskQueue(name)
        return queue

    def _channel(self, uniqueid: str, name: str) -> Optional[AsteriskChannel]:
        if uniqueid:
            return self.channel_manager.get_channel_by_id(uniqueid)
        return self.channel_manager.get_channel_by_name(name)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def handle_queue_params_event(self, event: QueueParamsEvent):
        if not event.queue:
            return
        queue = self._queue(event.queue)
        queue.max = event.max
        queue.strategy = event.strategy
        queue.service_level = event.service_level
        queue.weight = event.weight
        queue.calls = event.calls
        queue.hold_time = event.hold_time
        queue.talk_time = event.talk_time
        queue.completed = event.completed
        queue.abandoned = event.abandoned

    def handle_queue_member_event(self, event: QueueMemberEvent):
        if not event.queue or not event.location:
            return
        self._queue(event.queue).members[event.location] = QueueMember(
            location=event.location,
            name=event.member_name,
            membership=event.membership or 'static',
            penalty=event.penalty,
            calls_taken=event.calls_taken,
            last_call=event.last_call,
            status=event.status,
            paused=event.paused,
        )

    def handle_queue_entry_event(self, event: QueueEntryEvent):
        if not event.queue:
            return
        wait = event.wait
        self._queue(event.queue).add_entry(QueueEntry(
            uniqueid=event.uniqueid,
            channel_name=event.channel,
            position=event.position,
            caller_id_number=event.caller_id_number,
            caller_id_name=event.caller_id_name,
            date_joined=datetime.now() - timedelta(seconds=wait) if wait else datetime.now(),
            channel=self._channel(event.uniqueid, event.channel),
        ))

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------
    def handle_join_event(self, event: JoinEvent):
        if not event.queue:
            return
        queue = self._queue(event.queue)
        queue.add_entry(QueueEntry(
            uniqueid=event.uniqueid,
            channel_name=event.channel,
            position=event.position,
            caller_id_number=event.caller_id_number,
            caller_id_name=event.caller_id_name,
            channel=self._channel(event.uniqueid, event.channel),
        ))
        log.debug("Queue %s: caller %s joined (position %s)", queue.name, event.caller_id_number, event.position)

    def handle_leave_event(self, event: LeaveEvent):
        queue = self._queues.get(event.queue)
        if queue is None:
            log.debug("Leave event for unknown queue %s", event.queue)
            return
        if queue.remove_entry(event.uniqueid, event.channel) is None:
            log.debug("Queue %s: no entry for %s", queue.name, event.channel)
