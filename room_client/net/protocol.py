"""Room server wire protocol helpers.

The room server speaks two body formats: a CSV roster (``name,peerId,isActive``
per line) answered to ``sign_in`` and to hanging gets for our own id, and JSON
signaling envelopes relayed between the two participants.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from aiortc import RTCSessionDescription


logger = logging.getLogger(__name__)


# Endpoint names
ROOM_JOIN = "sign_in"
ROOM_HANG = "wait"
ROOM_MESSAGE = "message"
ROOM_LEAVE = "sign_out"

# Envelope type constants
OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
BYE = "bye"

LEGACY_BYE_BODY = "BYE"


class SignalingError(Exception):
	"""Base for signaling failures; ``message`` is reported to the caller verbatim."""

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class DecodeError(SignalingError):
	"""Malformed roster line or signaling envelope."""


class ProtocolError(SignalingError):
	"""Call or response that does not fit the current session state."""


@dataclass(frozen=True)
class RosterEntry:
	name: str
	peer_id: int
	active: bool


@dataclass(frozen=True)
class IceCandidate:
	"""Opaque ICE candidate as carried on the wire."""

	sdp_mid: str
	sdp_mline_index: int
	sdp: str


@dataclass(frozen=True)
class Offer:
	sdp: RTCSessionDescription


@dataclass(frozen=True)
class Answer:
	sdp: RTCSessionDescription


@dataclass(frozen=True)
class Candidate:
	candidate: IceCandidate


@dataclass(frozen=True)
class Bye:
	pass


Envelope = Union[Offer, Answer, Candidate, Bye]


# ----------------------
# URLs
# ----------------------
def join_url(room_url: str, room_id: str) -> str:
	return f"{room_url}/{ROOM_JOIN}?{room_id}"


def hanging_url(room_url: str, peer_id: int) -> str:
	return f"{room_url}/{ROOM_HANG}?peer_id={peer_id}"


def message_url(room_url: str, self_id: int, to_peer: int) -> str:
	return f"{room_url}/{ROOM_MESSAGE}?peer_id={self_id}&to={to_peer}"


def leave_url(room_url: str, self_id: int) -> str:
	return f"{room_url}/{ROOM_LEAVE}?peer_id={self_id}"


# ----------------------
# Decoding
# ----------------------
def parse_roster(body: str) -> List[RosterEntry]:
	"""Parse a roster body, skipping lines that do not have three sane fields."""

	entries: List[RosterEntry] = []
	for line in body.splitlines():
		line = line.strip()
		if not line:
			continue
		values = line.split(",")
		if len(values) != 3:
			logger.debug("roster line skipped fields=%s line=%r", len(values), line)
			continue
		try:
			peer_id = int(values[1])
			active = int(values[2]) == 1
		except ValueError:
			logger.debug("roster line skipped non-numeric line=%r", line)
			continue
		entries.append(RosterEntry(name=values[0], peer_id=peer_id, active=active))
	return entries


def _require_str(msg: Dict[str, Any], *keys: str) -> str:
	for key in keys:
		value = msg.get(key)
		if isinstance(value, str):
			return value
	raise DecodeError(f"missing string field {'/'.join(keys)}")


def _require_int(msg: Dict[str, Any], *keys: str) -> int:
	for key in keys:
		value = msg.get(key)
		# bool is an int subclass; a boolean line index is not valid
		if isinstance(value, int) and not isinstance(value, bool):
			return value
	raise DecodeError(f"missing integer field {'/'.join(keys)}")


def decode_envelope(body: str) -> Envelope:
	"""Decode one relayed signaling message.

	Raises:
		DecodeError: the body is not JSON, not an object, carries an unknown
			``type`` or lacks a field its variant needs.
	"""

	if body.strip() == LEGACY_BYE_BODY:
		return Bye()

	try:
		msg = json.loads(body)
	except json.JSONDecodeError as exc:
		raise DecodeError(f"invalid json: {exc}") from exc

	if not isinstance(msg, dict):
		raise DecodeError("envelope is not an object")

	mtype = msg.get("type")
	if mtype is None or mtype == CANDIDATE:
		return Candidate(
			IceCandidate(
				sdp_mid=_require_str(msg, "sdpMid", "id"),
				sdp_mline_index=_require_int(msg, "sdpMLineIndex", "label"),
				sdp=_require_str(msg, "candidate"),
			)
		)
	if mtype == OFFER:
		return Offer(RTCSessionDescription(sdp=_require_str(msg, "sdp"), type=OFFER))
	if mtype == ANSWER:
		return Answer(RTCSessionDescription(sdp=_require_str(msg, "sdp"), type=ANSWER))
	if mtype == BYE:
		return Bye()
	raise DecodeError(f"unrecognized envelope type {mtype!r}")


# ----------------------
# Encoding
# ----------------------
def make_offer(sdp: str) -> Dict[str, Any]:
	return {"type": OFFER, "sdp": sdp}


def make_answer(sdp: str) -> Dict[str, Any]:
	return {"type": ANSWER, "sdp": sdp}


def make_candidate(candidate: IceCandidate) -> Dict[str, Any]:
	return {
		"type": CANDIDATE,
		"label": candidate.sdp_mline_index,
		"id": candidate.sdp_mid,
		"candidate": candidate.sdp,
	}


def make_bye() -> Dict[str, Any]:
	return {"type": BYE}


def encode(payload: Dict[str, Any]) -> str:
	return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def parse_peer_hint(value: Optional[str]) -> Optional[int]:
	"""The server names the peer a response belongs to in its Pragma header."""

	if value is None:
		return None
	try:
		return int(value.strip())
	except ValueError:
		return None
