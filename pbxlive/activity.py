"""
One-shot actions run against a single live call leg.

An activity is executed against an AGI channel (the leg's script session,
exposing ``set_variable`` and ``dial`` coroutines) and the matching
:class:`~pbxlive.channels.AsteriskChannel`. Cancellation is cooperative: an
activity only looks at its gate where it chooses to, and never aborts a
command that is already in flight.
"""

import asyncio
import logging
from typing import Optional

log = logging.getLogger(__name__)

SIP_ADD_HEADER_VARIABLE = '__SIPADDHEADER'
DEFAULT_DIAL_TIMEOUT = 30


class ChannelActivityAction:
    """Base class; owns a single-fire cancellation gate."""

    def __init__(self):
        self._cancelled = asyncio.Event()

    async def execute(self, agi_channel, channel):
        raise NotImplementedError

    def is_disconnect(self) -> bool:
        """True when executing the activity ends the call."""
        return False

    def cancel(self, channel=None):
        """Signal cancellation. Only the first call has an effect."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        log.debug("%s cancelled on %s", type(self).__name__, getattr(channel, 'name', channel))

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait_cancelled(self):
        await self._cancelled.wait()


class HoldActivity(ChannelActivityAction):
    """Marks a channel as on hold until cancelled."""

    async def execute(self, agi_channel, channel):
        await self.wait_cancelled()


class BlindTransferActivity(ChannelActivityAction):
    """
    Blind transfer of one leg to a fully qualified target (e.g. ``SIP/1002``).

    The channel is put on hold so nothing else drives it, then the dial runs
    to completion. :meth:`cancel` is advisory: it is observable through
    :attr:`cancelled` but does not interrupt a dial that has started, and a
    cancel issued before :meth:`execute` does not prevent the dial either.
    """

    def __init__(self, target: str, sip_header: Optional[str] = None, timeout: int = DEFAULT_DIAL_TIMEOUT):
        super().__init__()
        self.target = target
        self.sip_header = sip_header or ''
        self.timeout = timeout

    async def execute(self, agi_channel, channel):
        await agi_channel.set_variable(SIP_ADD_HEADER_VARIABLE, self.sip_header)
        channel.set_current_activity_action(HoldActivity())
        # TODO: race the dial against the gate once AGI channels support aborting a running dial
        await agi_channel.dial(self.target, self.timeout, '')
