"""HTTP transport for the room server.

One request per call, no retries. Completions are handed back to the
signaling worker so callers never see an exception cross the async boundary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

import aiohttp

from .executor import LooperExecutor
from .protocol import SignalingError, parse_peer_hint


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_MS = 5000
PEER_HINT_HEADER = "Pragma"


class TransportError(SignalingError):
	"""Connection failure, timeout or non-2xx status."""


@dataclass(frozen=True)
class TransportResponse:
	body: str
	peer_id: Optional[int] = None


TransportResult = Union[TransportResponse, TransportError]
CompletionCallback = Callable[[TransportResult], None]


class HttpTransport:
	def __init__(self, executor: LooperExecutor, timeout_ms: int = DEFAULT_TIMEOUT_MS):
		self._executor = executor
		self.timeout_ms = timeout_ms
		self._session: Optional[aiohttp.ClientSession] = None

	def send(self, method: str, url: str, body: Optional[str], on_complete: CompletionCallback) -> None:
		"""Issue a request without blocking; ``on_complete`` runs on the worker."""

		self._executor.submit(self._send(method, url, body, on_complete))

	async def _send(self, method: str, url: str, body: Optional[str], on_complete: CompletionCallback) -> None:
		result: TransportResult
		try:
			result = await self.fetch(method, url, body)
		except TransportError as exc:
			result = exc
		except Exception as exc:
			logger.exception("http %s failed unexpectedly url=%s", method, url)
			result = TransportError(f"HTTP {method} to {url} failed: {exc}")
		self._executor.execute(on_complete, result)

	async def fetch(self, method: str, url: str, body: Optional[str] = None) -> TransportResponse:
		session = self._ensure_session()
		headers = {"Content-Type": "text/plain; charset=utf-8"} if body is not None else None
		timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
		logger.debug("http %s url=%s body_len=%s", method, url, len(body) if body is not None else 0)
		try:
			async with session.request(method, url, data=body, headers=headers, timeout=timeout) as resp:
				raw = await resp.read()
				if resp.status < 200 or resp.status >= 300:
					raise TransportError(f"Non-200 response to {method} to URL: {url} : {resp.status}")
				peer_id = parse_peer_hint(resp.headers.get(PEER_HINT_HEADER))
				text = raw.decode("utf-8", errors="replace")
		except asyncio.TimeoutError as exc:
			raise TransportError(f"HTTP {method} to {url} timeout") from exc
		except aiohttp.ClientError as exc:
			raise TransportError(f"HTTP {method} to {url} error: {exc}") from exc
		logger.debug("http %s done url=%s peer_id=%s body_len=%s", method, url, peer_id, len(text))
		return TransportResponse(body=text, peer_id=peer_id)

	async def close(self) -> None:
		if self._session is not None:
			await self._session.close()
			self._session = None

	def _ensure_session(self) -> aiohttp.ClientSession:
		if self._session is None or self._session.closed:
			self._session = aiohttp.ClientSession()
		return self._session
