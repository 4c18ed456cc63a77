from __future__ import annotations

import os
from dataclasses import dataclass

from .net.transport import DEFAULT_TIMEOUT_MS


DEFAULT_ROOM_URL = "http://127.0.0.1:8888"
DEFAULT_ROOM_ID = "default"


def _env_truthy(name: str) -> bool:
	v = os.environ.get(name, "").strip().casefold()
	return v in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return int(v)
	except ValueError:
		return default


@dataclass
class RoomConnectionParameters:
	room_url: str
	room_id: str
	loopback: bool = False
	timeout_ms: int = DEFAULT_TIMEOUT_MS

	@classmethod
	def from_env(cls) -> "RoomConnectionParameters":
		"""Defaults for the CLI; flags given on the command line take precedence."""

		return cls(
			room_url=os.environ.get("ROOM_CLIENT_URL", DEFAULT_ROOM_URL),
			room_id=os.environ.get("ROOM_CLIENT_ROOM", DEFAULT_ROOM_ID),
			loopback=_env_truthy("ROOM_CLIENT_LOOPBACK"),
			timeout_ms=_env_int("ROOM_CLIENT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
		)
