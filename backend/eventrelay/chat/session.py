"""Per-connection chat session state machine.

``transition`` is pure: it never touches the registry, the store or the
transport. It returns the next state and a list of effects for the
coordinator to carry out. Access checks need I/O, so a join first yields a
``VerifyAccess`` effect and the coordinator feeds back ``JoinApproved`` or
``JoinDenied``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple

from eventrelay.errors import AccessDenied, RelayError

CONNECTED = "connected"
JOINED = "joined"
DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class SessionState:
	phase: str = CONNECTED
	user_id: Optional[str] = None
	rooms: FrozenSet[str] = frozenset()

	@property
	def authenticated(self) -> bool:
		return self.user_id is not None

	def in_room(self, room_id: str) -> bool:
		return room_id in self.rooms


# --- actions -----------------------------------------------------------------


class Action:
	"""Marker base for client actions."""


@dataclass(frozen=True, slots=True)
class Authenticate(Action):
	user_id: str


@dataclass(frozen=True, slots=True)
class RequestJoin(Action):
	room_id: str


@dataclass(frozen=True, slots=True)
class JoinApproved(Action):
	room_id: str


@dataclass(frozen=True, slots=True)
class JoinDenied(Action):
	room_id: str
	error: RelayError


@dataclass(frozen=True, slots=True)
class Leave(Action):
	room_id: str


@dataclass(frozen=True, slots=True)
class Disconnect(Action):
	pass


class UserAction(Action):
	"""Actions that only need an authenticated session."""


class RoomAction(Action):
	"""Actions scoped to a room the session has joined."""

	room_id: str


@dataclass(frozen=True, slots=True)
class SendMessage(RoomAction):
	room_id: str
	content: str
	type: str = "text"


@dataclass(frozen=True, slots=True)
class EditMessage(RoomAction):
	room_id: str
	message_id: str
	content: str


@dataclass(frozen=True, slots=True)
class DeleteMessage(RoomAction):
	room_id: str
	message_id: str


@dataclass(frozen=True, slots=True)
class React(RoomAction):
	room_id: str
	message_id: str
	emoji: str


@dataclass(frozen=True, slots=True)
class MarkRead(RoomAction):
	room_id: str
	message_id: str


@dataclass(frozen=True, slots=True)
class Typing(RoomAction):
	room_id: str
	is_typing: bool


@dataclass(frozen=True, slots=True)
class ShareFile(RoomAction):
	room_id: str
	payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ShareVoice(RoomAction):
	room_id: str
	payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class History(RoomAction):
	room_id: str
	before: Optional[datetime] = None
	limit: int = 50


@dataclass(frozen=True, slots=True)
class StartCall(UserAction):
	target_id: str
	room_id: Optional[str] = None
	call_type: str = "voice"


@dataclass(frozen=True, slots=True)
class AcceptCall(UserAction):
	call_id: str


@dataclass(frozen=True, slots=True)
class RejectCall(UserAction):
	call_id: str
	reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class EndCall(UserAction):
	call_id: str


@dataclass(frozen=True, slots=True)
class UpdateStatus(UserAction):
	status: str


# --- effects -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Register:
	user_id: str


@dataclass(frozen=True, slots=True)
class Unregister:
	user_id: str


@dataclass(frozen=True, slots=True)
class VerifyAccess:
	room_id: str


@dataclass(frozen=True, slots=True)
class EnterRoom:
	room_id: str


@dataclass(frozen=True, slots=True)
class ExitRoom:
	room_id: str


@dataclass(frozen=True, slots=True)
class Perform:
	action: Action


@dataclass(frozen=True, slots=True)
class Reject:
	error: RelayError


Effect = Register | Unregister | VerifyAccess | EnterRoom | ExitRoom | Perform | Reject


def initial_state() -> SessionState:
	return SessionState()


def _phase_for(rooms: FrozenSet[str]) -> str:
	return JOINED if rooms else CONNECTED


def transition(state: SessionState, action: Action) -> Tuple[SessionState, List[Effect]]:
	"""Return the next session state and the effects the action requires."""
	if state.phase == DISCONNECTED:
		return state, []

	if isinstance(action, Disconnect):
		effects: List[Effect] = [ExitRoom(room) for room in sorted(state.rooms)]
		if state.user_id is not None:
			effects.append(Unregister(state.user_id))
		return replace(state, phase=DISCONNECTED, rooms=frozenset()), effects

	if not state.authenticated:
		if isinstance(action, Authenticate):
			return replace(state, user_id=action.user_id), [Register(action.user_id)]
		return state, [Reject(AccessDenied("unauthenticated"))]

	if isinstance(action, Authenticate):
		if action.user_id == state.user_id:
			return state, []
		return state, [Reject(AccessDenied("already_authenticated"))]

	if isinstance(action, RequestJoin):
		if state.in_room(action.room_id):
			return state, [EnterRoom(action.room_id)]
		return state, [VerifyAccess(action.room_id)]

	if isinstance(action, JoinApproved):
		rooms = state.rooms | {action.room_id}
		return replace(state, phase=JOINED, rooms=rooms), [EnterRoom(action.room_id)]

	if isinstance(action, JoinDenied):
		return state, [Reject(action.error)]

	if isinstance(action, Leave):
		if not state.in_room(action.room_id):
			return state, []
		rooms = state.rooms - {action.room_id}
		return replace(state, phase=_phase_for(rooms), rooms=rooms), [ExitRoom(action.room_id)]

	if isinstance(action, RoomAction):
		if not state.in_room(action.room_id):
			return state, [Reject(AccessDenied("not_in_room"))]
		return state, [Perform(action)]

	if isinstance(action, StartCall) and action.room_id and not state.in_room(action.room_id):
		return state, [Reject(AccessDenied("not_in_room"))]

	if isinstance(action, UserAction):
		return state, [Perform(action)]

	return state, [Reject(AccessDenied("unsupported_action"))]


__all__ = [
	"AcceptCall",
	"Action",
	"Authenticate",
	"CONNECTED",
	"DISCONNECTED",
	"DeleteMessage",
	"Disconnect",
	"EditMessage",
	"EndCall",
	"EnterRoom",
	"ExitRoom",
	"History",
	"JOINED",
	"JoinApproved",
	"JoinDenied",
	"Leave",
	"MarkRead",
	"Perform",
	"React",
	"Register",
	"Reject",
	"RejectCall",
	"RequestJoin",
	"RoomAction",
	"SendMessage",
	"SessionState",
	"ShareFile",
	"ShareVoice",
	"StartCall",
	"Typing",
	"Unregister",
	"UpdateStatus",
	"UserAction",
	"VerifyAccess",
	"initial_state",
	"transition",
]
