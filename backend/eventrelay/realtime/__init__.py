"""Connection registry and room fan-out."""

from .registry import ConnectionRegistry, Registration, TransportHandle
from .router import RoomRouter

__all__ = ["ConnectionRegistry", "Registration", "RoomRouter", "TransportHandle"]
