"""Media hand-off for file and voice shares."""

from __future__ import annotations

from typing import Mapping, Protocol

from eventrelay.errors import ValidationError

from .models import MediaReference

_FILE_PREFIXES = ("image/", "video/", "audio/", "application/", "text/")
_VOICE_PREFIX = "audio/"
MAX_FILE_BYTES = 25 * 1024 * 1024
MAX_VOICE_SECONDS = 300.0


class MediaProcessor(Protocol):
	async def process_file(self, user_id: str, payload: Mapping[str, object]) -> MediaReference:
		...

	async def process_voice(self, user_id: str, payload: Mapping[str, object]) -> MediaReference:
		...


def _require_url(payload: Mapping[str, object]) -> str:
	url = str(payload.get("url") or "").strip()
	if not url.lower().startswith(("https://", "http://")):
		raise ValidationError("media_url_required")
	return url


def _size(payload: Mapping[str, object]) -> int:
	try:
		size = int(payload.get("size") or 0)
	except (TypeError, ValueError):
		raise ValidationError("invalid_media_size") from None
	if size < 0 or size > MAX_FILE_BYTES:
		raise ValidationError("invalid_media_size")
	return size


class UploadedMediaProcessor:
	"""Accepts assets the client already uploaded and normalises their metadata.

	Clients upload straight to object storage and only send the resulting URL, so
	no bytes pass through the socket.
	"""

	async def process_file(self, user_id: str, payload: Mapping[str, object]) -> MediaReference:
		url = _require_url(payload)
		mime_type = str(payload.get("mimeType") or "").strip().lower()
		if not mime_type.startswith(_FILE_PREFIXES):
			raise ValidationError("unsupported_media_type")
		name = str(payload.get("name") or url.rsplit("/", 1)[-1])
		return MediaReference(url=url, name=name, size=_size(payload), mime_type=mime_type)

	async def process_voice(self, user_id: str, payload: Mapping[str, object]) -> MediaReference:
		url = _require_url(payload)
		mime_type = str(payload.get("mimeType") or "audio/mpeg").strip().lower()
		if not mime_type.startswith(_VOICE_PREFIX):
			raise ValidationError("unsupported_media_type")
		try:
			duration = float(payload.get("duration") or 0)
		except (TypeError, ValueError):
			raise ValidationError("invalid_voice_duration") from None
		if duration <= 0 or duration > MAX_VOICE_SECONDS:
			raise ValidationError("invalid_voice_duration")
		return MediaReference(
			url=url,
			name=str(payload.get("name") or "voice-message"),
			size=_size(payload),
			mime_type=mime_type,
			duration=duration,
		)


__all__ = ["MediaProcessor", "UploadedMediaProcessor"]
