import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
	"""One lock per key, created on demand and dropped when unused."""

	def __init__(self) -> None:
		self._guard = threading.Lock()
		self._locks: Dict[str, threading.RLock] = {}
		self._users: Dict[str, int] = {}

	@contextmanager
	def hold(self, key: str) -> Iterator[None]:
		with self._guard:
			lock = self._locks.get(key)
			if lock is None:
				lock = self._locks[key] = threading.RLock()
			self._users[key] = self._users.get(key, 0) + 1
		try:
			with lock:
				yield
		finally:
			with self._guard:
				self._users[key] -= 1
				if self._users[key] == 0:
					del self._users[key]
					del self._locks[key]

	def __len__(self) -> int:
		with self._guard:
			return len(self._locks)
