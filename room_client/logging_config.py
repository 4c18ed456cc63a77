from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure console logging for the room client.

    Records come from two threads: the main thread, which only starts and
    stops things, and the signaling looper, which runs every request, room
    state change and aiortc callback. The thread name is part of the format
    so the two can be told apart. DEBUG adds each HTTP request, buffered
    candidate and repeated receive failure; INFO keeps to sign-in, peers,
    offers/answers, BYE and sign-out.
    """

    effective_level = (level or os.environ.get("ROOM_CLIENT_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(effective_level)
        return
    logging.basicConfig(
        level=effective_level,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    # aiortc and aioice log every STUN transaction at DEBUG.
    if effective_level == "DEBUG":
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.INFO)
