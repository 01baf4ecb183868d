"""
BearBridge: request/response access to Bear's x-callback-url API
"""

from bearbridge.bear.api import BearAPI
from bearbridge.callback.correlator import CommandCorrelator
from bearbridge.callback.listener import CallbackListener
from bearbridge.core.errors import (
    BearBridgeError,
    CallbackError,
    CommandCancelledError,
    CommandTimeoutError,
    DatabaseError,
    TransportFailure,
    ValidationError,
)
from bearbridge.version import __version__

__all__ = [
    "__version__",
    "BearAPI",
    "CommandCorrelator",
    "CallbackListener",
    "BearBridgeError",
    "ValidationError",
    "TransportFailure",
    "CommandTimeoutError",
    "CommandCancelledError",
    "CallbackError",
    "DatabaseError",
]
