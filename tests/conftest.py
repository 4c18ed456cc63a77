"""Shared fakes for driving the signaling stack without a network or a thread."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from room_client.net.transport import TransportError, TransportResponse


@dataclass
class Request:
    method: str
    url: str
    body: Optional[str]
    on_complete: Callable[[Any], None]
    done: bool = False


class FakeTransport:
    """Records requests; tests complete them explicitly, in any order."""

    def __init__(self) -> None:
        self.requests: List[Request] = []

    def send(self, method: str, url: str, body: Optional[str], on_complete: Callable[[Any], None]) -> None:
        self.requests.append(Request(method, url, body, on_complete))

    def matching(self, fragment: str) -> List[Request]:
        return [r for r in self.requests if fragment in r.url]

    def pending(self, fragment: str = "") -> List[Request]:
        return [r for r in self.matching(fragment) if not r.done]

    def next(self, fragment: str) -> Request:
        pending = self.pending(fragment)
        assert len(pending) == 1, f"expected one pending {fragment!r}, got {pending}"
        return pending[0]

    def reply(self, fragment: str, body: str = "", peer_id: Optional[int] = None) -> None:
        request = self.next(fragment)
        request.done = True
        request.on_complete(TransportResponse(body=body, peer_id=peer_id))

    def fail(self, fragment: str, message: str = "boom") -> None:
        request = self.next(fragment)
        request.done = True
        request.on_complete(TransportError(message))


class InlineExecutor:
    """Runs queued work immediately on the calling thread.

    Delayed work is held until the test calls ``run_delayed``.
    """

    def __init__(self) -> None:
        self.delayed: List[Tuple[float, Callable[..., Any], Tuple[Any, ...]]] = []

    def execute(self, fn: Callable[..., Any], *args: Any) -> None:
        fn(*args)

    def execute_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> None:
        self.delayed.append((delay, fn, args))

    def run_delayed(self) -> None:
        delayed, self.delayed = self.delayed, []
        for _, fn, args in delayed:
            fn(*args)

    def submit(self, coro: Any) -> None:
        coro.close()
        raise AssertionError("no coroutines expected with the fake transport")


class Recorder:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.raise_on: Dict[str, Exception] = {}

    def cb(self, name: str) -> Callable[..., None]:
        def _record(*args: Any) -> None:
            self.calls.append((name, args))
            if name in self.raise_on:
                raise self.raise_on[name]

        return _record

    def of(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for n, args in self.calls if n == name]

    def names(self) -> List[str]:
        return [n for n, _ in self.calls]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
