"""
Live mirror of an Asterisk server's channels and queues over AMI.
"""

from .activity import BlindTransferActivity, ChannelActivityAction, HoldActivity
from .channels import AsteriskChannel, ChannelManager
from .connection import ManagerConnection, ManagerConnectionPool
from .errors import (
    AuthenticationError, CommandFailure, EventTimeoutError, ManagerCommunicationError,
    ManagerError, ManagerTimeoutError, NotConnectedError,
)
from .manager import AsteriskManager, parse_revision
from .queues import AsteriskQueue, QueueEntry, QueueManager, QueueMember

__all__ = [
    'AsteriskManager', 'parse_revision',
    'ManagerConnection', 'ManagerConnectionPool',
    'AsteriskChannel', 'ChannelManager',
    'AsteriskQueue', 'QueueEntry', 'QueueManager', 'QueueMember',
    'BlindTransferActivity', 'ChannelActivityAction', 'HoldActivity',
    'AuthenticationError', 'CommandFailure', 'EventTimeoutError',
    'ManagerCommunicationError', 'ManagerError', 'ManagerTimeoutError',
    'NotConnectedError',
]
