"""Chat domain exports."""

from .service import ChatCoordinator, ConnectResult
from .session import SessionState, transition

__all__ = [
	"ChatCoordinator",
	"ConnectResult",
	"SessionState",
	"transition",
]
