import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .timecodec import to_utc


@dataclass(frozen=True)
class BanRecord:
	address: str
	created_at: datetime
	expires_at: datetime
	reason: str = ""

	def __post_init__(self) -> None:
		object.__setattr__(self, "created_at", to_utc(self.created_at))
		object.__setattr__(self, "expires_at", to_utc(self.expires_at))
		if self.expires_at <= self.created_at:
			raise ValueError(
				f"Ban for {self.address} must expire after it is created "
				f"({self.expires_at.isoformat()} <= {self.created_at.isoformat()})"
			)

	def is_expired(self, now: datetime) -> bool:
		return self.expires_at <= to_utc(now)


class BanStore:
	"""Currently banned addresses keyed by address."""

	def __init__(self) -> None:
		self._lock = threading.RLock()
		self._records: Dict[str, BanRecord] = {}

	def get(self, address: str) -> Optional[BanRecord]:
		with self._lock:
			return self._records.get(address)

	def put(self, record: BanRecord) -> None:
		with self._lock:
			self._records[record.address] = record

	def remove(self, address: str) -> Optional[BanRecord]:
		with self._lock:
			return self._records.pop(address, None)

	def list_expired(self, now: datetime) -> List[BanRecord]:
		with self._lock:
			expired = [r for r in self._records.values() if r.is_expired(now)]
		return sorted(expired, key=lambda r: r.expires_at)

	def list_all(self) -> List[BanRecord]:
		with self._lock:
			records = list(self._records.values())
		return sorted(records, key=lambda r: r.expires_at)

	def replace_all(self, records: Iterable[BanRecord]) -> None:
		with self._lock:
			self._records = {r.address: r for r in records}

	def __contains__(self, address: str) -> bool:
		with self._lock:
			return address in self._records

	def __len__(self) -> int:
		with self._lock:
			return len(self._records)
