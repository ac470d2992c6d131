"""
AMI event shapes.

Every frame carrying an ``Event:`` header is turned into one of the classes
below by :func:`parse_event`. The set is closed: names that are not modeled
here become :class:`UnknownEvent` so consumers can ignore them safely.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Type

__all__ = [
    'ManagerEvent', 'UnknownEvent', 'ConnectEvent', 'DisconnectEvent',
    'ActionCompleteEvent', 'StatusEvent', 'NewChannelEvent', 'NewExtenEvent',
    'NewStateEvent', 'NewCallerIdEvent', 'LinkEvent', 'UnlinkEvent',
    'RenameEvent', 'HangupEvent', 'QueueParamsEvent', 'QueueMemberEvent',
    'QueueEntryEvent', 'JoinEvent', 'LeaveEvent', 'OriginateResponseEvent',
    'parse_event',
]

# Placeholders Asterisk sends instead of an empty value
_NULL_VALUES = frozenset({'', '<null>', '<unknown>', '(null)'})


def _int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _clean(value: Optional[str]) -> str:
    v = (value or '').strip()
    return '' if v.lower() in _NULL_VALUES else v


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
@dataclass
class ManagerEvent:
    """One AMI event. ``fields`` holds the raw ``key: value`` headers."""

    fields: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = '') -> str:
        return self.fields.get(key, default)

    @property
    def name(self) -> str:
        return self.get('Event')

    @property
    def action_id(self) -> str:
        return self.get('ActionID')

    @property
    def channel(self) -> str:
        return self.get('Channel')

    @property
    def uniqueid(self) -> str:
        return _clean(self.get('Uniqueid') or self.get('UniqueID'))


class UnknownEvent(ManagerEvent):
    pass


_EVENT_TYPES: Dict[str, Type[ManagerEvent]] = {}


def _register(*names: str):
    def decorator(cls):
        for n in names:
            _EVENT_TYPES[n.lower()] = cls
        return cls
    return decorator


# ---------------------------------------------------------------------------
# Connection lifecycle (synthesized locally, never parsed from the wire)
# ---------------------------------------------------------------------------
class ConnectEvent(ManagerEvent):
    """Delivered after the connection has been re-established."""

    @property
    def protocol_identifier(self) -> str:
        return self.get('ProtocolIdentifier')


class DisconnectEvent(ManagerEvent):
    """Delivered when the connection to the server is lost."""


@_register('StatusComplete', 'QueueStatusComplete')
class ActionCompleteEvent(ManagerEvent):
    pass


# ---------------------------------------------------------------------------
# Channel lifecycle
# ---------------------------------------------------------------------------
class _ChannelEvent(ManagerEvent):

    @property
    def state(self) -> str:
        return self.get('ChannelStateDesc') or self.get('State')

    @property
    def caller_id_number(self) -> str:
        return _clean(self.get('CallerIDNum') or self.get('CallerID'))

    @property
    def caller_id_name(self) -> str:
        return _clean(self.get('CallerIDName'))


@_register('Status')
class StatusEvent(_ChannelEvent):

    @property
    def account_code(self) -> str:
        return self.get('Accountcode') or self.get('Account')

    @property
    def context(self) -> str:
        return self.get('Context')

    @property
    def extension(self) -> str:
        return self.get('Extension') or self.get('Exten')

    @property
    def priority(self) -> int:
        return _int(self.get('Priority'), 1)

    @property
    def seconds(self) -> int:
        return _int(self.get('Seconds'))

    @property
    def link(self) -> str:
        return _clean(self.get('BridgedChannel') or self.get('Link'))


@_register('Newchannel')
class NewChannelEvent(_ChannelEvent):

    @property
    def account_code(self) -> str:
        return self.get('AccountCode')


@_register('Newexten')
class NewExtenEvent(ManagerEvent):

    @property
    def context(self) -> str:
        return self.get('Context')

    @property
    def extension(self) -> str:
        return self.get('Extension') or self.get('Exten')

    @property
    def priority(self) -> int:
        return _int(self.get('Priority'), 1)

    @property
    def application(self) -> str:
        return self.get('Application')

    @property
    def app_data(self) -> str:
        return self.get('AppData')


@_register('Newstate')
class NewStateEvent(_ChannelEvent):
    pass


@_register('NewCallerid')
class NewCallerIdEvent(_ChannelEvent):
    pass


class _BridgeEvent(ManagerEvent):

    @property
    def channel1(self) -> str:
        return self.get('Channel1')

    @property
    def channel2(self) -> str:
        return self.get('Channel2')

    @property
    def uniqueid1(self) -> str:
        return _clean(self.get('Uniqueid1'))

    @property
    def uniqueid2(self) -> str:
        return _clean(self.get('Uniqueid2'))


@_register('Link')
class LinkEvent(_BridgeEvent):
    pass


@_register('Unlink')
class UnlinkEvent(_BridgeEvent):
    pass


@_register('Rename')
class RenameEvent(ManagerEvent):

    @property
    def old_name(self) -> str:
        return self.get('Oldname') or self.get('Channel')

    @property
    def new_name(self) -> str:
        return self.get('Newname')


@_register('Hangup')
class HangupEvent(ManagerEvent):

    @property
    def cause(self) -> int:
        return _int(self.get('Cause'))

    @property
    def cause_text(self) -> str:
        return self.get('Cause-txt')


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------
class _QueueEvent(ManagerEvent):

    @property
    def queue(self) -> str:
        return self.get('Queue')


@_register('QueueParams')
class QueueParamsEvent(_QueueEvent):

    @property
    def max(self) -> int:
        return _int(self.get('Max'))

    @property
    def strategy(self) -> str:
        return self.get('Strategy')

    @property
    def calls(self) -> int:
        return _int(self.get('Calls'))

    @property
    def hold_time(self) -> int:
        return _int(self.get('Holdtime'))

    @property
    def talk_time(self) -> int:
        return _int(self.get('TalkTime'))

    @property
    def completed(self) -> int:
        return _int(self.get('Completed'))

    @property
    def abandoned(self) -> int:
        return _int(self.get('Abandoned'))

    @property
    def service_level(self) -> int:
        return _int(self.get('ServiceLevel'))

    @property
    def weight(self) -> int:
        return _int(self.get('Weight'))


@_register('QueueMember')
class QueueMemberEvent(_QueueEvent):

    @property
    def location(self) -> str:
        return self.get('Location') or self.get('StateInterface') or self.get('Interface')

    @property
    def member_name(self) -> str:
        return self.get('Name') or self.get('MemberName') or self.location

    @property
    def membership(self) -> str:
        return self.get('Membership').lower()

    @property
    def penalty(self) -> int:
        return _int(self.get('Penalty'))

    @property
    def calls_taken(self) -> int:
        return _int(self.get('CallsTaken'))

    @property
    def last_call(self) -> int:
        return _int(self.get('LastCall'))

    @property
    def status(self) -> int:
        return _int(self.get('Status'))

    @property
    def paused(self) -> bool:
        return self.get('Paused') in ('1', 'true', 'True', 'yes')


class _QueueCallerEvent(_QueueEvent):

    @property
    def position(self) -> int:
        return _int(self.get('Position'))

    @property
    def caller_id_number(self) -> str:
        return _clean(self.get('CallerIDNum') or self.get('CallerID'))

    @property
    def caller_id_name(self) -> str:
        return _clean(self.get('CallerIDName'))


@_register('QueueEntry')
class QueueEntryEvent(_QueueCallerEvent):

    @property
    def wait(self) -> int:
        return _int(self.get('Wait'))


@_register('Join', 'QueueCallerJoin')
class JoinEvent(_QueueCallerEvent):

    @property
    def count(self) -> int:
        return _int(self.get('Count'))


@_register('Leave', 'QueueCallerLeave')
class LeaveEvent(_QueueCallerEvent):

    @property
    def count(self) -> int:
        return _int(self.get('Count'))


# ---------------------------------------------------------------------------
# Origination confirmation
# ---------------------------------------------------------------------------
@_register('OriginateResponse', 'OriginateSuccess', 'OriginateFailure')
class OriginateResponseEvent(ManagerEvent):
    """Sent once an async Originate has either been answered or has failed."""

    @property
    def success(self) -> bool:
        if self.name.lower() == 'originatesuccess':
            return True
        return self.get('Response').lower() == 'success'

    @property
    def reason(self) -> int:
        return _int(self.get('Reason'))


def parse_event(fields: Dict[str, str]) -> ManagerEvent:
    """Map parsed AMI headers to the matching event class."""
    name = fields.get('Event', '').strip().lower()
    if name == 'bridge':
        # Asterisk 1.6+ reports link/unlink as Bridge with a Bridgestate header
        state = fields.get('Bridgestate', '').strip().lower()
        if state == 'link':
            return LinkEvent(fields)
        if state == 'unlink':
            return UnlinkEvent(fields)
        return UnknownEvent(fields)
    return _EVENT_TYPES.get(name, UnknownEvent)(fields)
