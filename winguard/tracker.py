import bisect
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .locks import KeyedLock
from .timecodec import to_utc, utcnow


class OffenseTracker:
	"""Sliding-window failure counter per source address.

	The window for an address holds offense timestamps in ascending order.
	Entries older than ``now - lookback`` are evicted whenever the address is
	touched. Timestamps ahead of ``now`` (clock skew, delayed delivery from a
	host with a fast clock) are clamped to ``now`` so every stored timestamp
	stays inside ``[now - lookback, now]``.
	"""

	def __init__(self, threshold: int, lookback_seconds: float, clock: Callable[[], datetime] = utcnow) -> None:
		if threshold < 1:
			raise ValueError("threshold must be >= 1")
		if lookback_seconds <= 0:
			raise ValueError("lookback_seconds must be positive")
		self.threshold = threshold
		self.lookback = timedelta(seconds=lookback_seconds)
		self._clock = clock
		self._windows: Dict[str, List[datetime]] = {}
		self._guard = threading.Lock()
		self._locks = KeyedLock()

	def _now(self, now: Optional[datetime]) -> datetime:
		return to_utc(now) if now is not None else to_utc(self._clock())

	def _evict_old(self, window: List[datetime], now: datetime) -> None:
		limit = now - self.lookback
		cut = bisect.bisect_left(window, limit)
		if cut:
			del window[:cut]

	def record_offense(self, address: str, timestamp: datetime, now: Optional[datetime] = None) -> int:
		now = self._now(now)
		ts = min(to_utc(timestamp), now)
		with self._locks.hold(address):
			with self._guard:
				window = self._windows.setdefault(address, [])
			bisect.insort(window, ts)
			self._evict_old(window, now)
			return len(window)

	def count(self, address: str, now: Optional[datetime] = None) -> int:
		now = self._now(now)
		with self._locks.hold(address):
			with self._guard:
				window = self._windows.get(address)
			if not window:
				return 0
			self._evict_old(window, now)
			return len(window)

	def should_ban(self, address: str, now: Optional[datetime] = None) -> bool:
		return self.count(address, now) >= self.threshold

	def reset(self, address: str) -> None:
		with self._locks.hold(address):
			with self._guard:
				self._windows.pop(address, None)

	def addresses(self) -> List[str]:
		with self._guard:
			return list(self._windows)

	def prune(self, now: Optional[datetime] = None) -> int:
		"""Drop windows that have emptied out. Returns how many were dropped."""
		now = self._now(now)
		dropped = 0
		for address in self.addresses():
			with self._locks.hold(address):
				with self._guard:
					window = self._windows.get(address)
					if window is None:
						continue
					self._evict_old(window, now)
					if not window:
						del self._windows[address]
						dropped += 1
		return dropped
