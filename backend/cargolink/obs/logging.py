"""JSON logging with per-request and per-socket context.

Context fields live in contextvars so that every record emitted while handling
an HTTP request or a socket event carries the ids of what is being handled,
without threading them through call signatures.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from cargolink.settings import settings

CONTEXT_FIELDS = ("request_id", "route", "user_id", "conversation_id", "sid")

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"cargolink_{name}", default=None) for name in CONTEXT_FIELDS
}

_ROOT_LOGGER = "cargolink"

# Message bodies and drafts are user content.
_REDACT_MARKERS = (
	"token",
	"secret",
	"authorization",
	"password",
	"email",
	"body",
	"draft",
	"content",
	"payload",
)
_REDACTED = "[redacted]"

_STRING_LIMIT = 256
_ITEM_LIMIT = 10

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Set the given context fields; None values are skipped.

	Returns the tokens `reset_context` needs to restore the previous values.
	"""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if name not in _CONTEXT:
			raise KeyError(f"unknown log context field: {name}")
		if value is not None:
			tokens[name] = _CONTEXT[name].set(value)
	return tokens


def reset_context(tokens: Mapping[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def current_context() -> Dict[str, str]:
	return {name: value for name, var in _CONTEXT.items() if (value := var.get())}


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def _clip(text: str) -> str:
	if len(text) <= _STRING_LIMIT:
		return text
	return text[:_STRING_LIMIT] + "…"


def _scrub_items(items: Iterable[Any]) -> list:
	out = []
	for index, item in enumerate(items):
		if index == _ITEM_LIMIT:
			out.append("…")
			break
		out.append(scrub(None, item))
	return out


def scrub(key: Optional[str], value: Any) -> Any:
	"""Make an `extra` value safe to serialize: redact by key, clip long values."""
	if key is not None and any(marker in key.lower() for marker in _REDACT_MARKERS):
		return _REDACTED
	if value is None or isinstance(value, (bool, int, float)):
		return value
	if isinstance(value, str):
		return _clip(value)
	if isinstance(value, Mapping):
		scrubbed = {str(k): scrub(str(k), v) for k, v in list(value.items())[:_ITEM_LIMIT]}
		if len(value) > _ITEM_LIMIT:
			scrubbed["…"] = f"+{len(value) - _ITEM_LIMIT} keys"
		return scrubbed
	if isinstance(value, (list, tuple, set, frozenset)):
		return _scrub_items(value)
	return _clip(str(value))


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: service identity, bound context, then extras."""

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
		entry.update(current_context())
		for key, value in vars(record).items():
			if key not in _STANDARD_ATTRS:
				entry[key] = scrub(key, value)
		if record.exc_info:
			entry["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(entry, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; every other level passes."""

	def __init__(self, rate: Optional[float] = None) -> None:
		super().__init__()
		self._rate = rate

	@property
	def rate(self) -> float:
		rate = settings.obs_log_sampling_rate_info if self._rate is None else self._rate
		return min(1.0, max(0.0, rate))

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = self.rate
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	"""Replace root handlers with a single JSON stream handler."""
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	for existing in list(root.handlers):
		root.removeHandler(existing)
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return get_logger()


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
