"""Tests covering the room session state machine against a recording transport."""

from __future__ import annotations

import json
import logging

import pytest

from room_client.net.peers import Peer
from room_client.net.protocol import IceCandidate
from room_client.net.room_session import RECEIVE_RETRY_DELAY, RoomSession, RoomState, SessionEvents

from conftest import InlineExecutor

ROOM = "http://room.test"

CAND_C1 = '{"type":"candidate","sdpMid":"audio","sdpMLineIndex":0,"candidate":"c1"}'
CAND_C2 = '{"sdpMid":"audio","sdpMLineIndex":1,"candidate":"c2"}'
CAND_C3 = '{"sdpMid":"video","sdpMLineIndex":0,"candidate":"c3"}'
CAND_C4 = '{"sdpMid":"video","sdpMLineIndex":1,"candidate":"c4"}'
OFFER = '{"type":"offer","sdp":"v=0 offer"}'

C1 = IceCandidate("audio", 0, "c1")
C2 = IceCandidate("audio", 1, "c2")
C3 = IceCandidate("video", 0, "c3")
C4 = IceCandidate("video", 1, "c4")


def make_session(transport, recorder, executor=None) -> RoomSession:
    events = SessionEvents(
        on_signed_in=recorder.cb("signed_in"),
        on_peer_connected=recorder.cb("peer_connected"),
        on_signaling_parameters_ready=recorder.cb("ready"),
        on_signaling_parameters_error=recorder.cb("params_error"),
        on_remote_ice_candidate=recorder.cb("candidate"),
        on_remote_description=recorder.cb("description"),
        on_bye=recorder.cb("bye"),
        on_left=recorder.cb("left"),
    )
    executor = executor or InlineExecutor()
    return RoomSession(ROOM, "alice", transport, executor.execute_later, events)


def signed_in(transport, recorder, roster: str = "alice,1,1\nbob,2,0", self_id: int = 1, executor=None) -> RoomSession:
    session = make_session(transport, recorder, executor)
    session.join()
    transport.reply("sign_in", roster, peer_id=self_id)
    return session


def surfaced(recorder) -> list:
    return [args[1] for args in recorder.of("candidate")]


def test_join_issues_sign_in_request(transport, recorder) -> None:
    session = make_session(transport, recorder)

    session.join()

    assert session.state == RoomState.RESOLVING
    assert [(r.method, r.url) for r in transport.requests] == [("GET", "http://room.test/sign_in?alice")]


def test_end_to_end_roster_and_candidate_bootstrap(transport, recorder) -> None:
    session = signed_in(transport, recorder)

    assert session.state == RoomState.CONNECTED
    assert session.self_id == 1 and session.self_name == "alice"
    assert session.peers.get(1) == Peer(peer_id=1, name="alice", connected=True)
    assert 2 not in session.peers
    assert recorder.of("peer_connected") == []
    assert transport.next("wait").url == "http://room.test/wait?peer_id=1"

    transport.reply("wait", CAND_C1, peer_id=2)
    assert recorder.of("candidate") == [(2, C1)]

    transport.reply("wait", CAND_C2, peer_id=2)
    assert surfaced(recorder) == [C1, C2]
    assert session.candidates == (C1, C2)
    assert len(transport.pending("wait")) == 1


def test_join_reports_active_peers(transport, recorder) -> None:
    signed_in(transport, recorder, roster="carol,3,1\nalice,1,1\ndave,4,0")

    assert recorder.of("peer_connected") == [(Peer(3, "carol", True), False)]
    self_peer, active = recorder.of("signed_in")[0]
    assert self_peer == Peer(1, "alice", True)
    assert active == [Peer(3, "carol", True)]


def test_join_transport_error_is_fatal_without_retry(transport, recorder) -> None:
    session = make_session(transport, recorder)
    session.join()

    transport.fail("sign_in", "connection refused")

    assert recorder.of("params_error") == [("connection refused",)]
    assert session.state == RoomState.NOT_CONNECTED
    assert len(transport.requests) == 1


def test_join_without_peer_hint_or_self_line_is_rejected(transport, recorder) -> None:
    session = make_session(transport, recorder)
    session.join()
    transport.reply("sign_in", "alice,1,1", peer_id=None)

    second = make_session(transport, recorder)
    second.join()
    transport.reply("sign_in", "bob,2,1", peer_id=1)

    third = make_session(transport, recorder)
    third.join()
    transport.reply("sign_in", "alice,1,0", peer_id=1)

    assert len(recorder.of("params_error")) == 3
    assert all(s.state == RoomState.NOT_CONNECTED for s in (session, second, third))
    assert transport.pending("wait") == []


def test_roster_update_fires_for_newly_active_peers_only(transport, recorder) -> None:
    session = signed_in(transport, recorder)

    transport.reply("wait", "alice,1,1\nbob,2,1", peer_id=1)
    transport.reply("wait", "bob,2,1", peer_id=1)
    assert recorder.of("peer_connected") == [(Peer(2, "bob", True), True)]

    transport.reply("wait", "bob,2,0", peer_id=1)
    assert session.peers.get(2) == Peer(2, "bob", False)

    transport.reply("wait", "bob,2,1", peer_id=1)
    assert len(recorder.of("peer_connected")) == 2


def test_offer_then_candidate_fires_readiness_once(transport, recorder) -> None:
    signed_in(transport, recorder)

    transport.reply("wait", OFFER, peer_id=2)
    assert recorder.of("ready") == []

    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", CAND_C2, peer_id=2)
    transport.reply("wait", CAND_C3, peer_id=2)

    ready = recorder.of("ready")
    assert len(ready) == 1
    params = ready[0][0]
    assert params.peer_id == "2" and params.client_id == "1"
    assert params.initiator is False
    assert params.offer_sdp.sdp == "v=0 offer" and params.offer_sdp.type == "offer"
    assert params.candidates == (C1,)


def test_candidate_then_offer_fires_readiness(transport, recorder) -> None:
    signed_in(transport, recorder)

    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", OFFER, peer_id=2)

    assert [args[0].candidates for args in recorder.of("ready")] == [(C1,)]


def test_offer_after_two_candidates_never_fires_readiness(transport, recorder) -> None:
    signed_in(transport, recorder)

    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", CAND_C2, peer_id=2)
    transport.reply("wait", OFFER, peer_id=2)

    assert recorder.of("ready") == []


def test_readiness_snapshot_is_not_mutated_later(transport, recorder) -> None:
    session = signed_in(transport, recorder)
    transport.reply("wait", OFFER, peer_id=2)
    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", CAND_C2, peer_id=2)

    params = recorder.of("ready")[0][0]
    assert params.candidates == (C1,)
    assert session.candidates == (C1, C2)


def test_answer_is_surfaced_immediately(transport, recorder) -> None:
    signed_in(transport, recorder)

    transport.reply("wait", '{"type":"answer","sdp":"v=0 answer"}', peer_id=2)

    (peer_id, sdp), = recorder.of("description")
    assert peer_id == 2
    assert sdp.type == "answer" and sdp.sdp == "v=0 answer"


def test_single_candidate_after_reset_waits_for_a_second(transport, recorder) -> None:
    session = signed_in(transport, recorder)
    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", OFFER, peer_id=2)

    transport.reply("wait", '{"type":"bye"}', peer_id=2)
    assert recorder.of("bye") == [(2,)]
    assert session.candidates == () and session.offer is None

    transport.reply("wait", CAND_C3, peer_id=2)
    assert surfaced(recorder) == [C1]

    transport.reply("wait", CAND_C4, peer_id=2)
    assert surfaced(recorder) == [C1, C3, C4]


def test_readiness_rearms_after_bye(transport, recorder) -> None:
    signed_in(transport, recorder)
    transport.reply("wait", OFFER, peer_id=2)
    transport.reply("wait", CAND_C1, peer_id=2)
    transport.reply("wait", "BYE", peer_id=2)

    transport.reply("wait", OFFER, peer_id=2)
    transport.reply("wait", CAND_C3, peer_id=2)

    assert [args[0].candidates for args in recorder.of("ready")] == [(C1,), (C3,)]


def test_receive_failures_and_bad_messages_rearm_the_loop(transport, recorder, executor) -> None:
    session = signed_in(transport, recorder, executor=executor)

    transport.fail("wait", "timeout")
    executor.run_delayed()
    transport.reply("wait", "not json", peer_id=2)
    transport.reply("wait", '{"type":"renegotiate"}', peer_id=2)
    transport.reply("wait", CAND_C1, peer_id=None)

    assert len(transport.pending("wait")) == 1
    assert session.outstanding_receives == 1
    assert recorder.of("params_error") == []
    assert recorder.of("candidate") == []


def test_at_most_one_receive_outstanding(transport, recorder, executor) -> None:
    session = signed_in(transport, recorder, executor=executor)
    steps = [
        ("reply", CAND_C1, 2),
        ("fail", None, None),
        ("reply", "alice,1,1\nbob,2,1", 1),
        ("reply", "garbage", 2),
        ("reply", OFFER, 2),
        ("reply", CAND_C2, 2),
    ]
    for kind, body, peer_id in steps:
        issued = len(transport.matching("wait"))
        processed = len([r for r in transport.matching("wait") if r.done])
        assert issued - processed <= 1
        if kind == "reply":
            transport.reply("wait", body, peer_id=peer_id)
        else:
            transport.fail("wait")
            assert session.outstanding_receives == 0
            executor.run_delayed()
        assert session.outstanding_receives <= 1

    assert len(transport.matching("wait")) == len(steps) + 1


def test_failed_receive_rearms_after_a_delay(transport, recorder, executor, caplog) -> None:
    session = signed_in(transport, recorder, executor=executor)

    with caplog.at_level(logging.DEBUG, logger="room_client.net.room_session"):
        for _ in range(3):
            transport.fail("wait", "connection refused")
            assert transport.pending("wait") == []
            assert [delay for delay, _, _ in executor.delayed] == [RECEIVE_RETRY_DELAY]
            executor.run_delayed()
            assert len(transport.pending("wait")) == 1

        transport.reply("wait", CAND_C1, peer_id=2)
        transport.fail("wait", "connection refused")

    failures = [r.levelno for r in caplog.records if "hanging get failed" in r.getMessage()]
    assert failures == [logging.WARNING, logging.DEBUG, logging.DEBUG, logging.WARNING]
    assert session.outstanding_receives == 0


def test_delayed_rearm_after_leave_is_a_no_op(transport, recorder, executor) -> None:
    session = signed_in(transport, recorder, executor=executor)
    transport.fail("wait")

    session.leave(send_bye=False)
    transport.reply("sign_out")
    executor.run_delayed()

    assert session.state == RoomState.NOT_CONNECTED
    assert transport.pending("wait") == []


def test_event_callback_failure_keeps_loop_alive(transport, recorder) -> None:
    signed_in(transport, recorder)
    recorder.raise_on["candidate"] = RuntimeError("caller bug")

    with pytest.raises(RuntimeError):
        transport.reply("wait", CAND_C1, peer_id=2)

    assert len(transport.pending("wait")) == 1


def test_leave_from_connected_sends_bye_then_signs_out(transport, recorder) -> None:
    session = signed_in(transport, recorder, roster="alice,1,1\nbob,2,1")
    done = []

    session.leave(on_done=lambda: done.append(True))

    bye = transport.next("message")
    assert bye.method == "POST"
    assert bye.url == "http://room.test/message?peer_id=1&to=2"
    assert json.loads(bye.body) == {"type": "bye"}
    assert session.state == RoomState.SIGNING_OUT_WAITING
    assert transport.pending("sign_out") == []

    transport.reply("message")
    assert session.state == RoomState.SIGNING_OUT
    assert transport.next("sign_out").url == "http://room.test/sign_out?peer_id=1"

    transport.reply("sign_out")
    assert session.state == RoomState.NOT_CONNECTED
    assert done == [True]
    assert recorder.of("left") == [()]


def test_leave_reaches_terminal_state_when_sends_fail(transport, recorder) -> None:
    session = signed_in(transport, recorder)

    session.leave(bye_to=2)
    transport.fail("message")
    transport.fail("sign_out")

    assert session.state == RoomState.NOT_CONNECTED
    assert recorder.of("left") == [()]


def test_leave_while_resolving_skips_requests(transport, recorder) -> None:
    session = make_session(transport, recorder)
    session.join()

    session.leave()
    assert session.state == RoomState.NOT_CONNECTED
    assert recorder.of("left") == [()]

    transport.reply("sign_in", "alice,1,1", peer_id=1)
    assert session.state == RoomState.NOT_CONNECTED
    assert transport.pending("wait") == []


def test_inflight_receive_after_leave_is_dropped(transport, recorder) -> None:
    session = signed_in(transport, recorder)

    session.leave(send_bye=False)
    transport.reply("wait", CAND_C1, peer_id=2)

    assert recorder.of("candidate") == []
    assert transport.pending("wait") == []
    assert session.outstanding_receives == 0
    assert transport.matching("message") == []


def test_post_sends_encoded_envelope(transport, recorder) -> None:
    session = signed_in(transport, recorder)
    errors = []

    session.post(2, {"type": "offer", "sdp": "o"}, on_error=errors.append)
    transport.fail("message", "503")

    request = transport.matching("message")[0]
    assert request.url == "http://room.test/message?peer_id=1&to=2"
    assert json.loads(request.body) == {"type": "offer", "sdp": "o"}
    assert errors == ["503"]
