from bearbridge.bear.actions import ACTIONS, get_action
from bearbridge.bear.api import BearAPI

__all__ = ["ACTIONS", "get_action", "BearAPI"]
