"""Long-poll signaling client.

Public entry point for the media side. It is intentionally unaware of aiortc
peer connections: it consumes and produces session descriptions and ICE
candidates and reports everything else through :class:`SignalingEvents`.

Every public method may be called from any thread; the work is queued onto the
executor's single worker, which is also where events are delivered.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Optional

from aiortc import RTCSessionDescription

from ..config import RoomConnectionParameters
from . import protocol
from .executor import LooperExecutor
from .peers import Peer
from .protocol import IceCandidate, ProtocolError
from .room_session import RoomSession, SessionEvents, SignalingParameters, Transport
from .transport import CompletionCallback, HttpTransport


logger = logging.getLogger(__name__)


Callback = Callable[..., None]


class ConnectionState(enum.Enum):
	NEW = "new"
	CONNECTED = "connected"
	CLOSED = "closed"
	ERROR = "error"


@dataclass
class SignalingEvents:
	on_connected_to_room: Optional[Callback] = None  # (params: SignalingParameters)
	on_signaling_parameters_ready: Optional[Callback] = None  # (params: SignalingParameters)
	on_signaling_parameters_error: Optional[Callback] = None  # (message: str)
	on_peer_connected: Optional[Callback] = None  # (peer: Peer)
	on_remote_ice_candidate: Optional[Callback] = None  # (candidate: IceCandidate)
	on_remote_description: Optional[Callback] = None  # (sdp: RTCSessionDescription)
	on_channel_error: Optional[Callback] = None  # (message: str)
	on_channel_close: Optional[Callback] = None  # ()


class _GuardedTransport:
	"""Routes transport completions through the client's error guard."""

	def __init__(self, transport: Transport, guard: Callable[..., None]):
		self._transport = transport
		self._guard = guard

	def send(self, method: str, url: str, body: Optional[str], on_complete: CompletionCallback) -> None:
		self._transport.send(method, url, body, lambda result: self._guard(on_complete, result))


class SignalingClient:
	def __init__(
		self,
		events: Optional[SignalingEvents],
		executor: LooperExecutor,
		transport: Optional[Transport] = None,
	):
		self.events = events or SignalingEvents()
		self._executor = executor
		self._transport = transport or HttpTransport(executor)

		self.state = ConnectionState.NEW
		self.initiator = False
		self._params: Optional[RoomConnectionParameters] = None
		self._session: Optional[RoomSession] = None
		self._peer_id: Optional[int] = None

	@property
	def session(self) -> Optional[RoomSession]:
		return self._session

	@property
	def transport(self) -> Transport:
		return self._transport

	# ----------------------
	# Public API
	# ----------------------
	def connect_to_room(self, params: RoomConnectionParameters) -> None:
		self._execute(self._connect_internal, params)

	def disconnect_from_room(self) -> Future:
		"""Leave the room; the returned future resolves once sign-out finished."""

		done: Future = Future()
		self._execute(self._disconnect_internal, done)
		return done

	def send_offer_sdp(self, sdp: RTCSessionDescription) -> None:
		self._execute(self._send_offer_internal, sdp)

	def send_answer_sdp(self, sdp: RTCSessionDescription) -> None:
		self._execute(self._send_answer_internal, sdp)

	def send_local_ice_candidate(self, candidate: IceCandidate) -> None:
		self._execute(self._send_candidate_internal, candidate)

	# ----------------------
	# Worker-side implementation
	# ----------------------
	def _connect_internal(self, params: RoomConnectionParameters) -> None:
		if self._session is not None and self.state != ConnectionState.CLOSED:
			logger.info("signaling reconnect, abandoning previous session state=%s", self.state.value)
			self._session.leave()

		logger.info("signaling connect room_url=%s room_id=%s loopback=%s", params.room_url, params.room_id, params.loopback)
		if isinstance(self._transport, HttpTransport):
			self._transport.timeout_ms = params.timeout_ms
		self._params = params
		self.state = ConnectionState.NEW
		self.initiator = False
		self._peer_id = None
		self._session = RoomSession(
			params.room_url,
			params.room_id,
			_GuardedTransport(self._transport, self._guarded),
			self._retry_later,
			SessionEvents(
				on_signed_in=self._on_signed_in,
				on_peer_connected=self._on_peer_connected,
				on_signaling_parameters_ready=self._on_offer_ready,
				on_signaling_parameters_error=self._on_signaling_parameters_error,
				on_remote_ice_candidate=self._on_remote_ice_candidate,
				on_remote_description=self._on_remote_description,
				on_bye=self._on_bye,
			),
		)
		self._session.join()

	def _disconnect_internal(self, done: Future) -> None:
		session = self._session
		logger.info("signaling disconnect state=%s", self.state.value)
		if self.state == ConnectionState.CLOSED or session is None:
			self.state = ConnectionState.CLOSED
			done.set_result(None)
			return
		bye_to = None if self._is_loopback() else self._peer_id
		self.state = ConnectionState.CLOSED
		session.leave(bye_to=bye_to, on_done=lambda: done.set_result(None))

	def _send_offer_internal(self, sdp: RTCSessionDescription) -> None:
		self._require_connected("Sending offer SDP in non connected state.")
		if self._is_loopback():
			# In loopback mode rename this offer to answer and route it back.
			self._emit(self.events.on_remote_description, RTCSessionDescription(sdp=sdp.sdp, type=protocol.ANSWER))
			return
		self._post(protocol.make_offer(sdp.sdp))

	def _send_answer_internal(self, sdp: RTCSessionDescription) -> None:
		if self._is_loopback():
			logger.error("signaling answer refused in loopback mode")
			return
		self._require_connected("Sending answer SDP in non connected state.")
		self._post(protocol.make_answer(sdp.sdp))

	def _send_candidate_internal(self, candidate: IceCandidate) -> None:
		if not self.initiator:
			# The answering side's candidates travel with its answer.
			logger.debug("signaling local candidate not sent (not initiator) mid=%s", candidate.sdp_mid)
			return
		self._require_connected("Sending ICE candidate in non connected state.")
		if self._is_loopback():
			self._emit(self.events.on_remote_ice_candidate, candidate)
			return
		self._post(protocol.make_candidate(candidate))

	def _post(self, payload: dict) -> None:
		assert self._session is not None and self._peer_id is not None
		self._session.post(self._peer_id, payload, on_error=lambda message: self._report_error(f"Room POST error: {message}"))

	# ----------------------
	# Session events
	# ----------------------
	def _on_signed_in(self, self_peer: Peer, active_peers: list) -> None:
		if self._is_loopback():
			self._signaling_parameters_ready(
				SignalingParameters(
					peer_id=str(self_peer.peer_id),
					client_id=str(self_peer.peer_id),
					initiator=not active_peers,
				)
			)
		elif active_peers:
			logger.info("signaling waiting for offer peers=%s", [p.peer_id for p in active_peers])
		else:
			logger.info("signaling waiting for a peer to join")

	def _on_peer_connected(self, peer: Peer, from_update: bool) -> None:
		self._emit(self.events.on_peer_connected, peer)
		# A peer joining after us makes us the room creator, hence the caller.
		if from_update and not self._is_loopback() and self.state == ConnectionState.NEW:
			session = self._session
			assert session is not None and session.self_id is not None
			self._signaling_parameters_ready(
				SignalingParameters(
					peer_id=str(peer.peer_id),
					client_id=str(session.self_id),
					initiator=True,
				)
			)

	def _on_offer_ready(self, params: SignalingParameters) -> None:
		self._emit(self.events.on_signaling_parameters_ready, params)
		if self.state == ConnectionState.CONNECTED and self.initiator:
			self._report_error(f"Received offer for call initiator from peer {params.peer_id}")
			return
		self._signaling_parameters_ready(params)

	def _signaling_parameters_ready(self, params: SignalingParameters) -> None:
		assert self._params is not None
		logger.info("signaling room connection completed peer_id=%s initiator=%s", params.peer_id, params.initiator)
		if self._params.loopback and (not params.initiator or params.offer_sdp is not None):
			self._report_error("Loopback room is busy.")
			if self._session is not None:
				self._session.leave(send_bye=False)
			return
		if not self._params.loopback and not params.initiator and params.offer_sdp is None:
			logger.warning("signaling no offer sdp in room response")
		if self.state not in (ConnectionState.NEW, ConnectionState.CONNECTED):
			logger.debug("signaling parameters ignored state=%s", self.state.value)
			return

		self.initiator = params.initiator
		self._peer_id = int(params.peer_id)
		self.state = ConnectionState.CONNECTED
		self._emit(self.events.on_connected_to_room, params)

	def _on_signaling_parameters_error(self, message: str) -> None:
		self.state = ConnectionState.ERROR
		self._emit(self.events.on_signaling_parameters_error, message)

	def _on_remote_ice_candidate(self, peer_id: int, candidate: IceCandidate) -> None:
		self._emit(self.events.on_remote_ice_candidate, candidate)

	def _on_remote_description(self, peer_id: int, sdp: RTCSessionDescription) -> None:
		if self.state == ConnectionState.CONNECTED and not self.initiator:
			self._report_error(f"Received answer for call receiver from peer {peer_id}")
			return
		self._emit(self.events.on_remote_description, sdp)

	def _on_bye(self, peer_id: int) -> None:
		logger.info("signaling remote peer left peer_id=%s", peer_id)
		self._emit(self.events.on_channel_close)

	# ----------------------
	# Helpers
	# ----------------------
	def _is_loopback(self) -> bool:
		return bool(self._params and self._params.loopback)

	def _require_connected(self, message: str) -> None:
		if self.state != ConnectionState.CONNECTED:
			raise ProtocolError(message)

	def _report_error(self, message: str) -> None:
		logger.error("signaling error: %s", message)
		if self.state != ConnectionState.ERROR:
			self.state = ConnectionState.ERROR
			self._emit(self.events.on_channel_error, message)

	def _execute(self, fn: Callable[..., None], *args: Any) -> None:
		self._executor.execute(self._guarded, fn, *args)

	def _retry_later(self, delay: float, fn: Callable[[], None]) -> None:
		self._executor.execute_later(delay, self._guarded, fn)

	def _guarded(self, fn: Callable[..., None], *args: Any) -> None:
		try:
			fn(*args)
		except ProtocolError as exc:
			self._report_error(exc.message)
		except Exception as exc:
			logger.exception("signaling task failed name=%s", getattr(fn, "__name__", fn))
			self._report_error(f"Unexpected signaling failure: {exc}")

	def _emit(self, callback: Optional[Callback], *args: Any) -> None:
		if callback:
			callback(*args)
