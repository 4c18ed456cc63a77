"""Tests covering environment-backed connection defaults."""

from room_client.config import DEFAULT_ROOM_ID, DEFAULT_ROOM_URL, RoomConnectionParameters
from room_client.net.transport import DEFAULT_TIMEOUT_MS


def test_from_env_defaults(monkeypatch) -> None:
    for name in ("ROOM_CLIENT_URL", "ROOM_CLIENT_ROOM", "ROOM_CLIENT_LOOPBACK", "ROOM_CLIENT_TIMEOUT_MS"):
        monkeypatch.delenv(name, raising=False)

    params = RoomConnectionParameters.from_env()

    assert params == RoomConnectionParameters(DEFAULT_ROOM_URL, DEFAULT_ROOM_ID, False, DEFAULT_TIMEOUT_MS)


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ROOM_CLIENT_URL", "http://rooms.example:9000")
    monkeypatch.setenv("ROOM_CLIENT_ROOM", "lobby")
    monkeypatch.setenv("ROOM_CLIENT_LOOPBACK", "Yes")
    monkeypatch.setenv("ROOM_CLIENT_TIMEOUT_MS", "not-a-number")

    params = RoomConnectionParameters.from_env()

    assert params.room_url == "http://rooms.example:9000"
    assert params.room_id == "lobby"
    assert params.loopback is True
    assert params.timeout_ms == DEFAULT_TIMEOUT_MS
