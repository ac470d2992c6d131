"""
AMI actions and response frames.

Only the actions this package sends are modeled. Each action renders itself
to the ``key: value`` wire form; responses are parsed back into
:class:`ManagerResponse`.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .events import ManagerEvent, OriginateResponseEvent

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
AMI_RESPONSE_END = '\r\n\r\n'
COMMAND_END      = '--END COMMAND--'

# Headers that may precede legacy "Response: Follows" command output
_COMMAND_HEADERS = frozenset({'Response', 'Privilege', 'ActionID', 'Message'})


def _parse(response: str) -> Dict[str, str]:
    """Parse AMI key: value response into a dict."""
    out = {}
    for line in response.split('\r\n'):
        if ':' in line:
            k, _, v = line.partition(':')
            if k:
                out[k.strip()] = v.strip()
    return out


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
@dataclass
class ManagerResponse:
    fields: Dict[str, str] = field(default_factory=dict)
    output: List[str] = field(default_factory=list)

    @property
    def response(self) -> str:
        return self.fields.get('Response', '')

    @property
    def action_id(self) -> str:
        return self.fields.get('ActionID', '')

    @property
    def message(self) -> str:
        return self.fields.get('Message', '')

    @property
    def is_error(self) -> bool:
        return self.response.lower() == 'error'


@dataclass
class ResponseEvents:
    """
    Result of an event-generating action.

    ``complete`` is False when the deadline passed before the completion
    event arrived; ``events`` then holds whatever was received so far.
    """

    response: Optional[ManagerResponse] = None
    events: List[ManagerEvent] = field(default_factory=list)
    complete: bool = False


def parse_response(raw: str) -> ManagerResponse:
    """
    Parse one response frame.

    Command output comes either as a legacy ``Response: Follows`` body
    terminated by ``--END COMMAND--`` or, on newer servers, as repeated
    ``Output:`` headers.
    """
    if 'Response: Follows' not in raw:
        fields: Dict[str, str] = {}
        output: List[str] = []
        for line in raw.split('\r\n'):
            k, sep, v = line.partition(':')
            if not sep or not k:
                continue
            if k == 'Output':
                output.append(v[1:] if v.startswith(' ') else v)
            else:
                fields[k.strip()] = v.strip()
        return ManagerResponse(fields, output)

    fields = {}
    output = []
    in_body = False
    for line in raw.replace('\r\n', '\n').split('\n'):
        if not in_body:
            k, sep, v = line.partition(':')
            if sep and k.strip() in _COMMAND_HEADERS:
                fields[k.strip()] = v.strip()
                continue
            in_body = True
        if line.strip() == COMMAND_END:
            break
        output.append(line)
    while output and not output[-1].strip():
        output.pop()
    return ManagerResponse(fields, output)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------
class ManagerAction:
    """Base action. Subclasses that produce follow-up events set ``complete_event``."""

    name = ''
    complete_event: Optional[str] = None

    def __init__(self, **params):
        self.params: Dict[str, str] = {k: str(v) for k, v in params.items() if v is not None}
        # assigned by the connection when the action is sent
        self.action_id = ''

    def headers(self) -> List[Tuple[str, str]]:
        return list(self.params.items())

    def is_complete(self, event: ManagerEvent) -> bool:
        return bool(self.complete_event) and event.name.lower() == self.complete_event.lower()

    def to_wire(self) -> str:
        parts = [f"Action: {self.name}\r\n"]
        if self.action_id:
            parts.append(f"ActionID: {self.action_id}\r\n")
        parts.extend(f"{k}: {v}\r\n" for k, v in self.headers())
        parts.append("\r\n")
        return ''.join(parts)

    def __repr__(self):
        return f"{type(self).__name__}({self.params!r})"


class LoginAction(ManagerAction):
    name = 'Login'

    def __init__(self, username: str, secret: str, events: str = 'on'):
        super().__init__(Username=username, Secret=secret, Events=events)

    def __repr__(self):
        return f"LoginAction(username={self.params.get('Username')!r})"


class LogoffAction(ManagerAction):
    name = 'Logoff'


class StatusAction(ManagerAction):
    """Reports every active channel as a Status event."""

    name = 'Status'
    complete_event = 'StatusComplete'


class QueueStatusAction(ManagerAction):
    """Reports QueueParams, QueueMember and QueueEntry events for all queues."""

    name = 'QueueStatus'
    complete_event = 'QueueStatusComplete'

    def __init__(self, queue: Optional[str] = None):
        super().__init__(Queue=queue)


class CommandAction(ManagerAction):
    name = 'Command'

    def __init__(self, command: str):
        super().__init__(Command=command)
        self.command = command


class OriginateAction(ManagerAction):
    """
    Originate a call to either an extension or an application.

    *timeout* is in milliseconds, as AMI expects it. The action is always
    sent async so the server reports the outcome with an OriginateResponse
    event instead of only acknowledging the request.
    """

    name = 'Originate'
    complete_event = 'OriginateResponse'

    def __init__(self, channel: str, context: Optional[str] = None, exten: Optional[str] = None,
                 priority: Optional[int] = None, application: Optional[str] = None,
                 data: Optional[str] = None, timeout: int = 30000, caller_id: Optional[str] = None,
                 variables: Optional[Dict[str, str]] = None):
        to_extension = any(v is not None for v in (context, exten, priority))
        to_application = application is not None or data is not None
        if to_extension == to_application:
            raise ValueError("Originate needs either context/exten/priority or application/data")
        if to_extension and (context is None or exten is None):
            raise ValueError("Originate to an extension needs both context and exten")
        if to_application and application is None:
            raise ValueError("Originate to an application needs an application")

        super().__init__(
            Channel=channel,
            Context=context,
            Exten=exten,
            Priority=(1 if priority is None else priority) if to_extension else None,
            Application=application,
            Data=data,
            Timeout=timeout,
            CallerID=caller_id,
            Async='true',
        )
        self.timeout = int(timeout)
        self.variables: Dict[str, str] = dict(variables or {})

    def headers(self) -> List[Tuple[str, str]]:
        items = super().headers()
        items.extend(('Variable', f"{k}={v}") for k, v in self.variables.items())
        return items

    def is_complete(self, event: ManagerEvent) -> bool:
        return isinstance(event, OriginateResponseEvent)
