"""
Exceptions raised by the AMI connection and the live facade.
"""

from typing import Optional


class ManagerError(Exception):
    """Base class for all AMI errors."""


class AuthenticationError(ManagerError):
    """Login was rejected by the server."""


class ManagerCommunicationError(ManagerError, OSError):
    """Transport-level failure talking to the server."""


class NotConnectedError(ManagerCommunicationError):
    """An action was sent while no connection is established."""


class ManagerTimeoutError(ManagerError, TimeoutError):
    """The server did not answer within the deadline."""


class EventTimeoutError(ManagerTimeoutError):
    """
    An event-generating action did not complete in time.

    *partial* holds the ResponseEvents received before the deadline.
    """

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        self.partial = partial


class CommandFailure(ManagerError):
    """A CLI command sent through the Command action failed."""

    def __init__(self, command: str, message: Optional[str] = None):
        super().__init__(f"{command}: {message or 'Unknown error'}")
        self.command = command
