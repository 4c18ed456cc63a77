"""Single-worker executor for room signaling.

All session state is mutated from tasks queued here, so none of it needs a
lock. Network I/O runs as coroutines on the same loop and re-queues its
completion instead of touching state directly.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Coroutine, Optional, Tuple


logger = logging.getLogger(__name__)


Task = Tuple[Callable[..., Any], Tuple[Any, ...]]


class LooperExecutor:
	"""Runs an asyncio loop in a background thread and drains one task queue."""

	def __init__(self, name: str = "signaling-looper"):
		self._name = name
		self._loop: Optional[asyncio.AbstractEventLoop] = None
		self._thread: Optional[threading.Thread] = None
		self._thread_id: Optional[int] = None
		self._queue: Optional[asyncio.Queue[Task]] = None
		self._ready = threading.Event()

	@property
	def loop(self) -> asyncio.AbstractEventLoop:
		if not self._loop:
			raise RuntimeError("LooperExecutor not started")
		return self._loop

	@property
	def running(self) -> bool:
		return self._thread is not None and self._thread.is_alive() and self._ready.is_set()

	def start(self) -> None:
		if self._thread and self._thread.is_alive():
			return

		def _run() -> None:
			loop = asyncio.new_event_loop()
			asyncio.set_event_loop(loop)
			self._loop = loop
			self._thread_id = threading.get_ident()
			self._queue = asyncio.Queue()
			worker = loop.create_task(self._drain(), name=f"{self._name}-worker")
			self._ready.set()
			try:
				loop.run_forever()
			finally:
				self._ready.clear()
				pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
				for t in pending:
					t.cancel()
				loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
				loop.close()
				logger.debug("looper stopped name=%s worker_done=%s", self._name, worker.done())

		self._ready.clear()
		self._thread = threading.Thread(target=_run, name=self._name, daemon=True)
		self._thread.start()
		self._ready.wait(timeout=5)

	def stop(self, timeout: float = 5.0) -> None:
		if not self._loop or not self._thread:
			return
		# Queued behind pending tasks so work already handed over still runs.
		self.execute(self._loop.stop)
		self._thread.join(timeout=timeout)

	def execute(self, fn: Callable[..., Any], *args: Any) -> None:
		if not self.running or self._loop is None or self._queue is None:
			logger.warning("looper %s not running, dropping task %s", self._name, getattr(fn, "__name__", fn))
			return
		self._loop.call_soon_threadsafe(self._queue.put_nowait, (fn, args))

	def execute_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> None:
		"""Queue ``fn`` after ``delay`` seconds, behind whatever is queued by then."""

		if not self.running or self._loop is None:
			logger.warning("looper %s not running, dropping delayed task %s", self._name, getattr(fn, "__name__", fn))
			return
		self._loop.call_soon_threadsafe(self._loop.call_later, delay, self.execute, fn, *args)

	def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
		return asyncio.run_coroutine_threadsafe(coro, self.loop)

	def is_worker_thread(self) -> bool:
		return threading.get_ident() == self._thread_id

	async def _drain(self) -> None:
		assert self._queue is not None
		while True:
			fn, args = await self._queue.get()
			try:
				fn(*args)
			except Exception:
				logger.exception("looper task failed name=%s", getattr(fn, "__name__", fn))
