"""JSON log output with per-request and per-socket context."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from eventrelay.settings import settings

# request_id / user_id / sid of whatever the current task is serving
_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("eventrelay_log_context", default={})

_ROOT_NAME = "eventrelay"

# extra keys whose values never reach the log stream
_REDACTED_KEYS = ("token", "password", "secret", "authorization", "email", "phone", "body", "content", "text")

_STRING_LIMIT = 200
_ITEM_LIMIT = 20

# LogRecord's own attributes; anything else on the record came from ``extra``
_RECORD_FIELDS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Merge non-empty ``fields`` into the log context; returns a token for ``reset_context``."""
	merged = dict(_CONTEXT.get())
	merged.update({key: value for key, value in fields.items() if value})
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def current_context() -> Dict[str, str]:
	return dict(_CONTEXT.get())


def _clean(key: str, value: Any) -> Any:
	if any(marker in key.lower() for marker in _REDACTED_KEYS):
		return "[redacted]"
	if isinstance(value, str) and len(value) > _STRING_LIMIT:
		return value[:_STRING_LIMIT] + "..."
	if isinstance(value, Mapping):
		items = list(value.items())[:_ITEM_LIMIT]
		return {str(k): _clean(str(k), v) for k, v in items}
	if isinstance(value, (list, tuple, set, frozenset)):
		return [_clean(key, item) for item in list(value)[:_ITEM_LIMIT]]
	if isinstance(value, datetime):
		return value.isoformat()
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then record extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		entry: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		entry.update(_CONTEXT.get())
		for key, value in record.__dict__.items():
			if key not in _RECORD_FIELDS and key not in entry:
				entry[key] = _clean(key, value)
		if record.exc_info:
			entry["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(entry, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a sampled share of info records; everything else passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info
		return rate >= 1.0 or random.random() < max(rate, 0.0)


def configure_logging() -> logging.Logger:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level.upper())
	return logging.getLogger(_ROOT_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_NAME)
