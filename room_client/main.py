from __future__ import annotations

import argparse
import logging
import sys

from .config import RoomConnectionParameters
from .logging_config import setup_logging


logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
	defaults = RoomConnectionParameters.from_env()
	parser = argparse.ArgumentParser(description="long-poll room client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use ROOM_CLIENT_LOG_LEVEL.",
	)
	parser.add_argument(
		"--room-url",
		default=defaults.room_url,
		help="Room server base URL (ROOM_CLIENT_URL)",
	)
	parser.add_argument(
		"--room",
		default=defaults.room_id,
		help="Room to join (ROOM_CLIENT_ROOM)",
	)
	parser.add_argument(
		"--loopback",
		action="store_true",
		default=defaults.loopback,
		help="Call ourselves through the room (ROOM_CLIENT_LOOPBACK)",
	)
	parser.add_argument(
		"--timeout-ms",
		type=int,
		default=defaults.timeout_ms,
		help="Per-request timeout in milliseconds (ROOM_CLIENT_TIMEOUT_MS)",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	try:
		from .net.executor import LooperExecutor
		from .rtc.peer import RoomPeer
	except Exception as e:
		print(f"Failed to import RTC dependencies: {e}")
		print("Install client deps with: pip install -e .")
		return 2

	params = RoomConnectionParameters(
		room_url=args.room_url,
		room_id=args.room,
		loopback=args.loopback,
		timeout_ms=args.timeout_ms,
	)

	executor = LooperExecutor()
	executor.start()
	peer = RoomPeer(executor)
	peer.connect(params)
	try:
		while not peer.closed.wait(timeout=0.5):
			pass
	except KeyboardInterrupt:
		logger.info("interrupted, leaving room")
	finally:
		try:
			peer.disconnect().result(timeout=(params.timeout_ms / 1000) * 2 + 1)
		except Exception:
			logger.warning("leave did not complete cleanly", exc_info=True)
		executor.submit(peer.client.transport.close()).result(timeout=5)
		executor.stop()

	return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
