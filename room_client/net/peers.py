"""Per-session registry of peers seen in room rosters."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .protocol import RosterEntry


@dataclass
class Peer:
	peer_id: int
	name: str
	connected: bool = True


class PeerRegistry:
	"""Maps peer id to :class:`Peer`.

	Peers are created when a roster line reports them active and are never
	removed; the room server has no "left" signal beyond an explicit inactive
	line, and absence from a later roster is not treated as departure.
	"""

	def __init__(self) -> None:
		self._peers: Dict[int, Peer] = {}

	def update(self, entry: RosterEntry) -> bool:
		"""Apply one roster line. Returns True when the peer became active."""

		existing = self._peers.get(entry.peer_id)
		if existing is None:
			if not entry.active:
				return False
			self._peers[entry.peer_id] = Peer(peer_id=entry.peer_id, name=entry.name)
			return True

		was_connected = existing.connected
		existing.name = entry.name
		existing.connected = entry.active
		return entry.active and not was_connected

	def get(self, peer_id: int) -> Optional[Peer]:
		peer = self._peers.get(peer_id)
		return replace(peer) if peer else None

	def active(self, exclude: Optional[int] = None) -> List[Peer]:
		return [replace(p) for p in self._peers.values() if p.connected and p.peer_id != exclude]

	def first_active(self, exclude: Optional[int] = None) -> Optional[Peer]:
		peers = self.active(exclude)
		return min(peers, key=lambda p: p.peer_id) if peers else None

	def snapshot(self) -> Dict[int, Peer]:
		return {pid: replace(p) for pid, p in self._peers.items()}

	def clear(self) -> None:
		self._peers.clear()

	def __contains__(self, peer_id: object) -> bool:
		return peer_id in self._peers

	def __len__(self) -> int:
		return len(self._peers)
