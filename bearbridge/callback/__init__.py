"""
Callback engine: parameter encoding, ephemeral listeners and request/callback correlation.
"""

from bearbridge.callback.codec import encode
from bearbridge.callback.correlator import CommandCorrelator, build_invocation_url
from bearbridge.callback.invoker import ExternalInvoker, OpenURLInvoker
from bearbridge.callback.listener import CallbackListener

__all__ = [
    "encode",
    "build_invocation_url",
    "CommandCorrelator",
    "ExternalInvoker",
    "OpenURLInvoker",
    "CallbackListener",
]
