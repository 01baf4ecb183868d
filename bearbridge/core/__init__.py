from bearbridge.core.config import BridgeConfig
from bearbridge.core.types import ActionSpec, CallbackPayload, CommandRequest, ExchangeState, TokenPolicy

__all__ = ["BridgeConfig", "ActionSpec", "CallbackPayload", "CommandRequest", "ExchangeState", "TokenPolicy"]
