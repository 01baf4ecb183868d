from bearbridge.store.bear_db import BearDatabase

__all__ = ["BearDatabase"]
