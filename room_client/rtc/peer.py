"""One aiortc connection driven by the long-poll signaling client."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, List, Optional, Set

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from ..config import RoomConnectionParameters
from ..net.executor import LooperExecutor
from ..net.peers import Peer
from ..net.protocol import IceCandidate
from ..net.room_session import SignalingParameters
from ..net.signaling_client import SignalingClient, SignalingEvents


logger = logging.getLogger(__name__)


CANDIDATE_PREFIX = "candidate:"
DATA_CHANNEL_LABEL = "room"


def candidate_to_aiortc(candidate: IceCandidate) -> RTCIceCandidate:
    sdp = candidate.sdp
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX):]
    cand = candidate_from_sdp(sdp)
    cand.sdpMid = candidate.sdp_mid
    cand.sdpMLineIndex = candidate.sdp_mline_index
    return cand


def candidate_from_aiortc(candidate: RTCIceCandidate) -> IceCandidate:
    return IceCandidate(
        sdp_mid=candidate.sdpMid or "",
        sdp_mline_index=candidate.sdpMLineIndex or 0,
        sdp=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
    )


def sdp_candidates(sdp: str) -> List[IceCandidate]:
    """Candidates embedded in a description, tagged with their m-line."""

    found: List[IceCandidate] = []
    for index, media in enumerate(SessionDescription.parse(sdp).media):
        for cand in media.ice_candidates:
            cand.sdpMid = media.rtp.muxId
            cand.sdpMLineIndex = index
            found.append(candidate_from_aiortc(cand))
    return found


class RoomPeer:
    """Answers or places a call in a two-party room.

    Signaling callbacks arrive on the executor's worker thread, which is also
    the thread running the asyncio loop; connection work is scheduled there as
    coroutines.
    """

    def __init__(self, executor: LooperExecutor, rtc_config: Optional[RTCConfiguration] = None):
        self._executor = executor
        self._rtc_config = rtc_config
        self._pc: Optional[RTCPeerConnection] = None
        self._pending_candidates: List[IceCandidate] = []
        self._sent_candidates: Set[IceCandidate] = set()
        self.closed = threading.Event()

        self.client = SignalingClient(
            SignalingEvents(
                on_connected_to_room=self._on_connected_to_room,
                on_signaling_parameters_error=self._on_fatal,
                on_peer_connected=self._on_peer_connected,
                on_remote_ice_candidate=self._on_remote_ice_candidate,
                on_remote_description=self._on_remote_description,
                on_channel_error=self._on_fatal,
                on_channel_close=self._on_channel_close,
            ),
            executor,
        )

    def connect(self, params: RoomConnectionParameters) -> None:
        self.client.connect_to_room(params)

    def disconnect(self) -> Future:
        self._schedule(self._close_pc())
        return self.client.disconnect_from_room()

    # ----------------------
    # Signaling callbacks (worker thread)
    # ----------------------
    def _on_connected_to_room(self, params: SignalingParameters) -> None:
        logger.info("rtc connected to room peer_id=%s initiator=%s", params.peer_id, params.initiator)
        if params.initiator:
            self._schedule(self._place_call())
        elif params.offer_sdp is not None:
            for candidate in params.candidates:
                self._queue_remote_candidate(candidate)
            self._schedule(self._answer_call(params.offer_sdp))

    def _on_peer_connected(self, peer: Peer) -> None:
        logger.info("rtc peer in room peer_id=%s name=%s", peer.peer_id, peer.name)

    def _on_remote_description(self, sdp: RTCSessionDescription) -> None:
        self._schedule(self._apply_remote_description(sdp))

    def _on_remote_ice_candidate(self, candidate: IceCandidate) -> None:
        if self._pc is None or self._pc.remoteDescription is None:
            self._queue_remote_candidate(candidate)
            return
        self._schedule(self._add_candidate(candidate))

    def _queue_remote_candidate(self, candidate: IceCandidate) -> None:
        # The bootstrap candidate is both surfaced and carried in the parameters.
        if candidate not in self._pending_candidates:
            self._pending_candidates.append(candidate)

    def _on_channel_close(self) -> None:
        logger.info("rtc remote peer hung up")
        self._schedule(self._close_pc())
        self.closed.set()

    def _on_fatal(self, message: str) -> None:
        logger.error("rtc signaling failed: %s", message)
        self._schedule(self._close_pc())
        self.closed.set()

    # ----------------------
    # Connection work (asyncio loop)
    # ----------------------
    def _ensure_pc(self) -> RTCPeerConnection:
        if self._pc is not None:
            return self._pc
        pc = RTCPeerConnection(configuration=self._rtc_config)

        @pc.on("icecandidate")
        def on_icecandidate(event) -> None:
            if event is None or event.candidate is None:
                return
            self._send_local_candidate(candidate_from_aiortc(event.candidate))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            logger.info("rtc connectionState=%s", pc.connectionState)

        @pc.on("datachannel")
        def on_datachannel(channel) -> None:
            self._watch_channel(channel)

        self._pc = pc
        return pc

    def _watch_channel(self, channel) -> None:
        @channel.on("open")
        def on_open() -> None:
            logger.info("rtc data channel open label=%s", channel.label)

        @channel.on("message")
        def on_message(message: Any) -> None:
            logger.info("rtc data channel message label=%s len=%s", channel.label, len(message))

    async def _place_call(self) -> None:
        pc = self._ensure_pc()
        self._watch_channel(pc.createDataChannel(DATA_CHANNEL_LABEL))
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        assert pc.localDescription is not None
        self.client.send_offer_sdp(pc.localDescription)
        # Gathering completes inside setLocalDescription; the answering side
        # waits for a candidate alongside the offer.
        for candidate in sdp_candidates(pc.localDescription.sdp):
            self._send_local_candidate(candidate)

    def _send_local_candidate(self, candidate: IceCandidate) -> None:
        if candidate in self._sent_candidates:
            return
        self._sent_candidates.add(candidate)
        self.client.send_local_ice_candidate(candidate)

    async def _answer_call(self, offer: RTCSessionDescription) -> None:
        pc = self._ensure_pc()
        await pc.setRemoteDescription(offer)
        await self._flush_candidates()
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        assert pc.localDescription is not None
        self.client.send_answer_sdp(pc.localDescription)

    async def _apply_remote_description(self, sdp: RTCSessionDescription) -> None:
        pc = self._ensure_pc()
        await pc.setRemoteDescription(sdp)
        await self._flush_candidates()

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: IceCandidate) -> None:
        if self._pc is None:
            return
        try:
            cand = candidate_to_aiortc(candidate)
        except Exception:
            logger.warning("rtc remote candidate unparsable mid=%s", candidate.sdp_mid)
            return
        await self._pc.addIceCandidate(cand)

    async def _close_pc(self) -> None:
        pc, self._pc = self._pc, None
        if pc is not None:
            await pc.close()

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        fut = self._executor.submit(coro)
        fut.add_done_callback(_log_failure)


def _log_failure(fut: Future) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        logger.error("rtc task failed", exc_info=fut.exception())


__all__ = ["RoomPeer", "candidate_from_aiortc", "candidate_to_aiortc", "sdp_candidates"]
