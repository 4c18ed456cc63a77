"""Room session state machine.

One instance per room connection. It owns the connection state, the peer
registry and the remote candidate buffer, and drives
join -> hanging get -> exchange -> leave against the room server. All methods
run on the signaling worker; the transport re-queues its completions there.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Tuple

from aiortc import RTCSessionDescription

from . import protocol
from .peers import Peer, PeerRegistry
from .protocol import DecodeError, IceCandidate, ProtocolError
from .transport import CompletionCallback, TransportError, TransportResponse, TransportResult


logger = logging.getLogger(__name__)


Callback = Callable[..., None]
RetryLater = Callable[[float, Callable[[], None]], None]


RECEIVE_RETRY_DELAY = 0.5


class RoomState(enum.Enum):
	NOT_CONNECTED = "not-connected"
	RESOLVING = "resolving"
	SIGNING_IN = "signing-in"
	CONNECTED = "connected"
	SIGNING_OUT_WAITING = "signing-out-waiting"
	SIGNING_OUT = "signing-out"


class Transport(Protocol):
	def send(self, method: str, url: str, body: Optional[str], on_complete: CompletionCallback) -> None: ...


@dataclass(frozen=True)
class SignalingParameters:
	peer_id: str
	client_id: str
	initiator: bool
	offer_sdp: Optional[RTCSessionDescription] = None
	candidates: Tuple[IceCandidate, ...] = ()


@dataclass
class SessionEvents:
	on_signed_in: Optional[Callback] = None  # (self_peer: Peer, active_peers: list[Peer])
	on_peer_connected: Optional[Callback] = None  # (peer: Peer, from_update: bool)
	on_signaling_parameters_ready: Optional[Callback] = None  # (params: SignalingParameters)
	on_signaling_parameters_error: Optional[Callback] = None  # (message: str)
	on_remote_ice_candidate: Optional[Callback] = None  # (peer_id: int, candidate: IceCandidate)
	on_remote_description: Optional[Callback] = None  # (peer_id: int, sdp: RTCSessionDescription)
	on_bye: Optional[Callback] = None  # (peer_id: int)
	on_left: Optional[Callback] = None  # ()


@dataclass
class _Negotiation:
	"""Remote material collected from the counterpart since the last reset."""

	candidates: List[IceCandidate] = field(default_factory=list)
	surfaced: int = 0
	offer: Optional[RTCSessionDescription] = None
	ready_fired: bool = False


class RoomSession:
	def __init__(
		self,
		room_url: str,
		room_id: str,
		transport: Transport,
		retry_later: RetryLater,
		events: Optional[SessionEvents] = None,
	):
		self.room_url = room_url.rstrip("/")
		self.room_id = room_id
		self.events = events or SessionEvents()
		self._transport = transport
		self._retry_later = retry_later

		self.state = RoomState.NOT_CONNECTED
		self.self_id: Optional[int] = None
		self.self_name: Optional[str] = None
		self.peers = PeerRegistry()

		self._negotiation = _Negotiation()
		# Until the first candidate is surfaced, candidates are forwarded as
		# soon as they arrive; afterwards a lone buffered one waits for a second.
		self._bootstrap = True
		self._outstanding_receives = 0
		self._receive_failures = 0
		self._leave_callbacks: List[Callable[[], None]] = []

	@property
	def candidates(self) -> Tuple[IceCandidate, ...]:
		return tuple(self._negotiation.candidates)

	@property
	def offer(self) -> Optional[RTCSessionDescription]:
		return self._negotiation.offer

	@property
	def outstanding_receives(self) -> int:
		return self._outstanding_receives

	# ----------------------
	# Join
	# ----------------------
	def join(self) -> None:
		if self.state != RoomState.NOT_CONNECTED:
			raise ProtocolError(f"join in state {self.state.value}")
		self._negotiation = _Negotiation()
		self._bootstrap = True
		self.peers.clear()
		self._receive_failures = 0
		self.state = RoomState.RESOLVING
		url = protocol.join_url(self.room_url, self.room_id)
		logger.info("room join url=%s", url)
		self._transport.send("GET", url, None, self._on_join_complete)

	def _on_join_complete(self, result: TransportResult) -> None:
		if self.state != RoomState.RESOLVING:
			logger.debug("room join response dropped state=%s", self.state.value)
			return
		if isinstance(result, TransportError):
			logger.error("room join failed: %s", result.message)
			self.state = RoomState.NOT_CONNECTED
			self._emit(self.events.on_signaling_parameters_error, result.message)
			return
		try:
			self_peer, active = self._sign_in(result)
		except ProtocolError as exc:
			logger.error("room sign-in rejected: %s", exc.message)
			self.state = RoomState.NOT_CONNECTED
			self._emit(self.events.on_signaling_parameters_error, exc.message)
			return

		self.state = RoomState.CONNECTED
		logger.info("room signed in self_id=%s name=%s peers=%s", self_peer.peer_id, self_peer.name, len(active))
		try:
			for peer in active:
				self._emit(self.events.on_peer_connected, peer, False)
			self._emit(self.events.on_signed_in, self_peer, active)
		finally:
			if self.state == RoomState.CONNECTED:
				self._start_hanging()

	def _sign_in(self, response: TransportResponse) -> Tuple[Peer, List[Peer]]:
		if response.peer_id is None:
			raise ProtocolError("Join response did not identify this client")
		self_id = response.peer_id
		self.state = RoomState.SIGNING_IN

		entries = protocol.parse_roster(response.body)
		self_entry = next((e for e in entries if e.peer_id == self_id), None)
		if self_entry is None:
			raise ProtocolError(f"Peer {self_id} missing from room roster")
		if not self_entry.active:
			raise ProtocolError(f"Room reports peer {self_id} inactive")

		self.self_id = self_id
		self.self_name = self_entry.name
		self.peers.update(self_entry)
		for entry in entries:
			if entry.peer_id != self_id:
				self.peers.update(entry)

		self_peer = self.peers.get(self_id)
		assert self_peer is not None
		return self_peer, self.peers.active(exclude=self_id)

	# ----------------------
	# Hanging get
	# ----------------------
	def _start_hanging(self) -> None:
		assert self.self_id is not None
		if self._outstanding_receives:
			logger.debug("room hanging get already outstanding")
			return
		self._outstanding_receives += 1
		self._transport.send("GET", protocol.hanging_url(self.room_url, self.self_id), None, self._on_hanging_complete)

	def _on_hanging_complete(self, result: TransportResult) -> None:
		self._outstanding_receives -= 1
		if self.state != RoomState.CONNECTED:
			logger.debug("room hanging response dropped state=%s", self.state.value)
			return

		if isinstance(result, TransportError):
			self._receive_failures += 1
			log = logger.warning if self._receive_failures == 1 else logger.debug
			log("room hanging get failed attempt=%s: %s", self._receive_failures, result.message)
			self._retry_later(RECEIVE_RETRY_DELAY, self._rearm_hanging)
			return

		self._receive_failures = 0
		try:
			self._handle_hanging_response(result)
		except DecodeError as exc:
			logger.warning("room message dropped from=%s: %s", result.peer_id, exc.message)
		finally:
			if self.state == RoomState.CONNECTED:
				self._start_hanging()

	def _rearm_hanging(self) -> None:
		if self.state == RoomState.CONNECTED:
			self._start_hanging()

	def _handle_hanging_response(self, response: TransportResponse) -> None:
		if response.peer_id is None:
			raise DecodeError("response does not name its sender")
		if response.peer_id == self.self_id:
			self._apply_roster_update(response.body)
		else:
			self._handle_envelope(response.peer_id, protocol.decode_envelope(response.body))

	def _apply_roster_update(self, body: str) -> None:
		for entry in protocol.parse_roster(body):
			if entry.peer_id == self.self_id:
				continue
			if self.peers.update(entry):
				peer = self.peers.get(entry.peer_id)
				logger.info("room peer connected peer_id=%s name=%s", entry.peer_id, entry.name)
				self._emit(self.events.on_peer_connected, peer, True)
			elif not entry.active and entry.peer_id in self.peers:
				logger.info("room peer inactive peer_id=%s", entry.peer_id)

	def _handle_envelope(self, sender: int, envelope: protocol.Envelope) -> None:
		neg = self._negotiation
		if isinstance(envelope, protocol.Offer):
			logger.info("room offer from=%s sdp_len=%s", sender, len(envelope.sdp.sdp))
			neg.offer = envelope.sdp
		elif isinstance(envelope, protocol.Answer):
			logger.info("room answer from=%s sdp_len=%s", sender, len(envelope.sdp.sdp))
			self._emit(self.events.on_remote_description, sender, envelope.sdp)
		elif isinstance(envelope, protocol.Candidate):
			neg.candidates.append(envelope.candidate)
			logger.debug("room candidate from=%s buffered=%s", sender, len(neg.candidates))
			if self._bootstrap or len(neg.candidates) > 1:
				self._surface_candidates(sender)
		elif isinstance(envelope, protocol.Bye):
			logger.info("room bye from=%s", sender)
			self._negotiation = _Negotiation()
			self._emit(self.events.on_bye, sender)
			return

		if neg.offer is not None and len(neg.candidates) == 1 and not neg.ready_fired:
			neg.ready_fired = True
			assert self.self_id is not None
			params = SignalingParameters(
				peer_id=str(sender),
				client_id=str(self.self_id),
				initiator=False,
				offer_sdp=neg.offer,
				candidates=tuple(neg.candidates),
			)
			logger.info("room signaling parameters ready peer_id=%s", sender)
			self._emit(self.events.on_signaling_parameters_ready, params)

	def _surface_candidates(self, sender: int) -> None:
		neg = self._negotiation
		pending = neg.candidates[neg.surfaced:]
		neg.surfaced = len(neg.candidates)
		self._bootstrap = False
		for candidate in pending:
			self._emit(self.events.on_remote_ice_candidate, sender, candidate)

	# ----------------------
	# Outbound
	# ----------------------
	def post(self, target_id: int, payload: dict, on_error: Optional[Callable[[str], None]] = None) -> None:
		def _done(result: TransportResult) -> None:
			if isinstance(result, TransportError):
				logger.error("room post failed to=%s: %s", target_id, result.message)
				if on_error:
					on_error(result.message)

		self._post(target_id, payload, _done)

	def _post(self, target_id: int, payload: dict, on_complete: CompletionCallback) -> None:
		if self.self_id is None:
			raise ProtocolError("Cannot post before signing in")
		url = protocol.message_url(self.room_url, self.self_id, target_id)
		logger.debug("room post type=%s to=%s", payload.get("type"), target_id)
		self._transport.send("POST", url, protocol.encode(payload), on_complete)

	# ----------------------
	# Leave
	# ----------------------
	def leave(
		self,
		bye_to: Optional[int] = None,
		on_done: Optional[Callable[[], None]] = None,
		send_bye: bool = True,
	) -> None:
		"""Sign out, saying BYE first when connected.

		``bye_to`` defaults to the lowest-numbered other active peer. The
		session always ends in ``NOT_CONNECTED``, even when either request
		fails; ``on_done`` runs once it gets there.
		"""

		if on_done:
			self._leave_callbacks.append(on_done)
		if self.state in (RoomState.SIGNING_OUT_WAITING, RoomState.SIGNING_OUT):
			return

		if self.state == RoomState.CONNECTED and send_bye:
			target = bye_to
			if target is None:
				peer = self.peers.first_active(exclude=self.self_id)
				target = peer.peer_id if peer else None
			if target is not None and target != self.self_id:
				self.state = RoomState.SIGNING_OUT_WAITING
				logger.info("room sending bye to=%s", target)
				self._post(target, protocol.make_bye(), self._on_bye_sent)
				return
		self._sign_out()

	def _on_bye_sent(self, result: TransportResult) -> None:
		if isinstance(result, TransportError):
			logger.warning("room bye failed: %s", result.message)
		self._sign_out()

	def _sign_out(self) -> None:
		if self.self_id is None:
			self._finish_leave()
			return
		self.state = RoomState.SIGNING_OUT
		url = protocol.leave_url(self.room_url, self.self_id)
		logger.info("room leave url=%s", url)
		self._transport.send("GET", url, None, self._on_signed_out)

	def _on_signed_out(self, result: TransportResult) -> None:
		if isinstance(result, TransportError):
			logger.warning("room leave failed: %s", result.message)
		self._finish_leave()

	def _finish_leave(self) -> None:
		self.state = RoomState.NOT_CONNECTED
		callbacks, self._leave_callbacks = self._leave_callbacks, []
		self._emit(self.events.on_left)
		for cb in callbacks:
			cb()

	def _emit(self, callback: Optional[Callback], *args: Any) -> None:
		if callback:
			callback(*args)
