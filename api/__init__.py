"""Bridge relayer — api package."""

from .server import RelayerServer

__all__ = ["RelayerServer"]
