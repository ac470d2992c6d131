"""
Live channel registry.

Mirrors the active channels of the server from Status snapshots and the
channel lifecycle events. Channels are keyed by their Uniqueid, so replaying
the same snapshot twice never yields duplicates.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .events import (
    HangupEvent, LinkEvent, NewCallerIdEvent, NewChannelEvent, NewExtenEvent,
    NewStateEvent, RenameEvent, StatusEvent, UnlinkEvent,
)

log = logging.getLogger(__name__)

STATE_HUNGUP = 'Hungup'


@dataclass
class Extension:
    context: str
    extension: str
    priority: int = 1
    application: str = ''
    app_data: str = ''


@dataclass
class AsteriskChannel:
    """One active call leg as last reported by the server."""

    id: str
    name: str
    state: str = 'Down'
    caller_id_number: str = ''
    caller_id_name: str = ''
    account_code: str = ''
    date_of_creation: datetime = field(default_factory=datetime.now)
    current_extension: Optional[Extension] = None
    extension_history: List[Extension] = field(default_factory=list)
    linked_channel_id: Optional[str] = None
    hangup_cause: Optional[int] = None
    hangup_cause_text: str = ''
    # Activity currently driving the channel (e.g. HoldActivity); other logic
    # must not drive a channel whose activity it does not own.
    current_activity: Optional[object] = None

    def set_current_activity_action(self, activity):
        self.current_activity = activity

    def set_extension(self, extension: Extension):
        if extension != self.current_extension:
            self.current_extension = extension
            self.extension_history.append(extension)

    def to_dict(self) -> Dict:
        ext = self.current_extension
        return {
            'id': self.id,
            'name': self.name,
            'state': self.state,
            'callerid': self.caller_id_number,
            'callerid_name': self.caller_id_name,
            'account_code': self.account_code,
            'created': self.date_of_creation.isoformat(),
            'context': ext.context if ext else '',
            'extension': ext.extension if ext else '',
            'priority': ext.priority if ext else None,
            'linked_channel_id': self.linked_channel_id,
            'activity': type(self.current_activity).__name__ if self.current_activity else None,
        }


class ChannelManager:
    """Channel registry fed by the facade's event dispatch."""

    def __init__(self):
        self._channels: Dict[str, AsteriskChannel] = {}   # uniqueid -> channel

    def __len__(self):
        return len(self._channels)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_channels(self) -> List[AsteriskChannel]:
        return list(self._channels.values())

    def get_channel_by_id(self, uniqueid: Optional[str]) -> Optional[AsteriskChannel]:
        if not uniqueid:
            return None
        return self._channels.get(uniqueid)

    def get_channel_by_name(self, name: Optional[str]) -> Optional[AsteriskChannel]:
        """Newest channel with the given name."""
        if not name:
            return None
        for channel in reversed(list(self._channels.values())):
            if channel.name == name:
                return channel
        return None

    def clear(self):
        self._channels.clear()

    def _lookup(self, uniqueid: str, name: str) -> Optional[AsteriskChannel]:
        # names are reused (DAHDI/1-1), so only fall back to them without a Uniqueid
        if uniqueid:
            return self.get_channel_by_id(uniqueid)
        return self.get_channel_by_name(name)

    def _link(self, a: AsteriskChannel, b: AsteriskChannel):
        a.linked_channel_id = b.id
        b.linked_channel_id = a.id

    def _unlink(self, channel: AsteriskChannel):
        peer = self.get_channel_by_id(channel.linked_channel_id)
        if peer and peer.linked_channel_id == channel.id:
            peer.linked_channel_id = None
        channel.linked_channel_id = None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def handle_status_event(self, event: StatusEvent):
        if not event.uniqueid:
            log.debug("Status event without Uniqueid for %s", event.channel)
            return

        channel = self._channels.get(event.uniqueid)
        if channel is None:
            channel = AsteriskChannel(
                id=event.uniqueid,
                name=event.channel,
                date_of_creation=datetime.now() - timedelta(seconds=event.seconds),
            )
            self._channels[channel.id] = channel

        channel.name = event.channel or channel.name
        channel.state = event.state or channel.state
        channel.caller_id_number = event.caller_id_number
        channel.caller_id_name = event.caller_id_name
        channel.account_code = event.account_code
        if event.context or event.extension:
            channel.set_extension(Extension(event.context, event.extension, event.priority))

        if event.link:
            peer = self.get_channel_by_name(event.link)
            if peer:
                self._link(channel, peer)

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------
    def handle_new_channel_event(self, event: NewChannelEvent):
        if not event.uniqueid:
            return
        channel = self._channels.get(event.uniqueid)
        if channel is None:
            channel = AsteriskChannel(id=event.uniqueid, name=event.channel)
            self._channels[channel.id] = channel
            log.debug("New channel %s (%s)", channel.name, channel.id)
        channel.name = event.channel or channel.name
        channel.state = event.state or channel.state
        channel.caller_id_number = event.caller_id_number
        channel.caller_id_name = event.caller_id_name
        channel.account_code = event.account_code

    def handle_new_exten_event(self, event: NewExtenEvent):
        channel = self._lookup(event.uniqueid, event.channel)
        if channel is None:
            log.debug("Newexten for unknown channel %s", event.channel)
            return
        channel.set_extension(Extension(
            event.context, event.extension, event.priority, event.application, event.app_data))

    def handle_new_state_event(self, event: NewStateEvent):
        channel = self._lookup(event.uniqueid, event.channel)
        if channel is None:
            log.debug("Newstate for unknown channel %s", event.channel)
            return
        channel.state = event.state or channel.state

    def handle_new_caller_id_event(self, event: NewCallerIdEvent):
        channel = self._lookup(event.uniqueid, event.channel)
        if channel is None:
            return
        channel.caller_id_number = event.caller_id_number
        channel.caller_id_name = event.caller_id_name

    def handle_link_event(self, event: LinkEvent):
        a = self._lookup(event.uniqueid1, event.channel1)
        b = self._lookup(event.uniqueid2, event.channel2)
        if a is None or b is None:
            log.debug("Link between unknown channels %s / %s", event.channel1, event.channel2)
            return
        self._link(a, b)

    def handle_unlink_event(self, event: UnlinkEvent):
        for uniqueid, name in ((event.uniqueid1, event.channel1), (event.uniqueid2, event.channel2)):
            channel = self._lookup(uniqueid, name)
            if channel:
                self._unlink(channel)

    def handle_rename_event(self, event: RenameEvent):
        channel = self._lookup(event.uniqueid, event.old_name)
        if channel is None or not event.new_name:
            return
        log.debug("Channel %s renamed to %s", channel.name, event.new_name)
        channel.name = event.new_name

    def handle_hangup_event(self, event: HangupEvent):
        channel = self._lookup(event.uniqueid, event.channel)
        if channel is None:
            return
        channel.state = STATE_HUNGUP
        channel.hangup_cause = event.cause
        channel.hangup_cause_text = event.cause_text
        self._unlink(channel)
        self._channels.pop(channel.id, None)
        log.debug("Channel %s hung up (cause %s)", channel.name, event.cause)
