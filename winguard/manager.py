from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .config import AgentConfig, is_ip_whitelisted, normalize_address
from .db import Journal
from .errors import FirewallOperationFailed, FirewallUnavailable, MalformedTimestamp, ReconciliationMismatch
from .firewall import FirewallAdapter, FirewallRule
from .locks import KeyedLock
from .logger import logger
from .notifications import NotificationManager
from .store import BanRecord, BanStore
from .timecodec import decode, encode, to_utc, utcnow, whole_seconds
from .tracker import OffenseTracker

RESTORED_REASON = "restored from firewall rule"

# Outcomes of retiring one ban.
REMOVED = "removed"
REMOVED_WITH_ERROR = "removed_with_error"
RETRY = "retry"


@dataclass
class SweepResult:
	removed: List[BanRecord] = field(default_factory=list)
	failed: List[Tuple[str, str]] = field(default_factory=list)
	retried: List[str] = field(default_factory=list)


@dataclass
class ReconciliationReport:
	restored: List[BanRecord] = field(default_factory=list)
	foreign: List[ReconciliationMismatch] = field(default_factory=list)


class BanManager:
	"""Turns offense bursts into expiring firewall blocks and takes them back.

	All state changes for one address happen under that address's lock, so a
	ban being issued and the sweep retiring it can never interleave. The
	firewall rule description carries nothing but the encoded expiry, which is
	what lets :meth:`reconcile` rebuild the store after a restart.
	"""

	def __init__(
		self,
		firewall: FirewallAdapter,
		tracker: OffenseTracker,
		store: Optional[BanStore] = None,
		ban_seconds: float = 900,
		whitelist: Optional[List[str]] = None,
		clock: Callable[[], datetime] = utcnow,
		journal: Optional[Journal] = None,
		notifier: Optional[NotificationManager] = None,
	) -> None:
		if ban_seconds <= 0:
			raise ValueError("ban_seconds must be positive")
		self.firewall = firewall
		self.tracker = tracker
		self.store = store or BanStore()
		self.ban_duration = timedelta(seconds=ban_seconds)
		self.whitelist = list(whitelist or [])
		self.journal = journal or Journal(None)
		self.notifier = notifier
		self._clock = clock
		self._locks = KeyedLock()

	@classmethod
	def from_config(cls, cfg: AgentConfig, firewall: FirewallAdapter, clock: Callable[[], datetime] = utcnow, journal: Optional[Journal] = None) -> "BanManager":
		return cls(
			firewall=firewall,
			tracker=OffenseTracker(cfg.failures_threshold, cfg.window_seconds, clock=clock),
			ban_seconds=cfg.ban_seconds,
			whitelist=cfg.whitelist,
			clock=clock,
			journal=journal or Journal(cfg.db_path),
			notifier=NotificationManager(),
		)

	def _now(self, now: Optional[datetime]) -> datetime:
		return to_utc(now if now is not None else self._clock())

	def consider_offense(
		self,
		address: str,
		timestamp: Optional[datetime] = None,
		now: Optional[datetime] = None,
		reason: Optional[str] = None,
	) -> Optional[BanRecord]:
		"""Count one offense and ban the address once it reaches the threshold.

		Returns the new :class:`BanRecord` when this offense issued a ban and
		``None`` otherwise. Offenses from an address that is already banned
		are ignored. Raises :class:`FirewallOperationFailed` when the block
		rule cannot be installed; the window is left intact so the next
		offense retries.
		"""
		addr = normalize_address(address)
		if addr is None:
			logger.warning("Ignoring offense with invalid source address", ip=address)
			return None
		if is_ip_whitelisted(addr, self.whitelist):
			logger.info("Ignoring offense from whitelisted address", ip=addr)
			return None
		now = self._now(now)
		timestamp = to_utc(timestamp) if timestamp is not None else now

		record = None
		retired = None
		with self._locks.hold(addr):
			existing = self.store.get(addr)
			if existing is not None:
				if not existing.is_expired(now):
					return None
				# Expired but not swept yet: retire it before counting anew.
				retired = self._retire(existing, "expired")
				if retired == RETRY:
					return None

			count = self.tracker.record_offense(addr, timestamp, now)
			if self.tracker.should_ban(addr, now):
				record = self._ban(addr, now, count, reason)

		# Sent outside the address lock.
		if retired == REMOVED:
			self._notify_unbanned(addr, "expired")
		if record is not None and self.notifier is not None:
			self.notifier.notify_banned(record, count)
		return record

	def _ban(self, addr: str, now: datetime, count: int, reason: Optional[str]) -> BanRecord:
		created_at = whole_seconds(now)
		expires_at = created_at + self.ban_duration
		reason = reason or f"{count} failures within {int(self.tracker.lookback.total_seconds())}s"
		try:
			self.firewall.add_block(addr, encode(expires_at))
		except FirewallOperationFailed as e:
			logger.error("Could not install firewall block", ip=addr, operation=e.operation, error=e.message, timed_out=e.timed_out)
			self.journal.action("ban", addr, "error", expires_at, e.message)
			raise

		record = BanRecord(addr, created_at, expires_at, reason)
		self.store.put(record)
		self.tracker.reset(addr)
		logger.ban_event(addr, reason, encode(expires_at), attempts=count)
		self.journal.action("ban", addr, "ok", expires_at, reason)
		return record

	def _notify_unbanned(self, addr: str, cause: str) -> None:
		if self.notifier is not None:
			self.notifier.notify_unbanned(addr, cause)

	def _retire(self, record: BanRecord, cause: str) -> str:
		"""Remove the rule and then the record. Caller holds the address lock."""
		addr = record.address
		try:
			self.firewall.remove_block(addr)
		except FirewallOperationFailed as e:
			if e.timed_out:
				logger.warning("Firewall removal timed out, will retry", ip=addr, cause=cause)
				self.journal.action("unban", addr, "retry", record.expires_at, e.message)
				return RETRY
			# The wanted end state is "no rule, no record"; drop the record anyway.
			logger.error("Could not remove firewall block", ip=addr, cause=cause, error=e.message)
			self.store.remove(addr)
			self.journal.action("unban", addr, "error", record.expires_at, e.message)
			logger.unban_event(addr, cause, firewall="error")
			return REMOVED_WITH_ERROR

		self.store.remove(addr)
		self.journal.action("unban", addr, "ok", record.expires_at, cause)
		logger.unban_event(addr, cause)
		return REMOVED

	def sweep_expired(self, now: Optional[datetime] = None) -> SweepResult:
		now = self._now(now)
		result = SweepResult()
		for candidate in self.store.list_expired(now):
			addr = candidate.address
			try:
				with self._locks.hold(addr):
					current = self.store.get(addr)
					if current is None or not current.is_expired(now):
						continue
					outcome = self._retire(current, "expired")
			except Exception as e:
				logger.exception("Unexpected error while expiring ban", ip=addr)
				result.failed.append((addr, str(e)))
				continue
			if outcome == RETRY:
				result.retried.append(addr)
				continue
			result.removed.append(current)
			if outcome == REMOVED_WITH_ERROR:
				result.failed.append((addr, "firewall removal failed"))
			else:
				self._notify_unbanned(addr, "expired")
		if result.removed or result.retried:
			logger.info(
				"Expiry sweep finished",
				removed=len(result.removed),
				failed=len(result.failed),
				retried=len(result.retried),
			)
		return result

	def unban_now(self, address: str) -> bool:
		"""Lift a ban immediately whatever its expiry.

		Returns ``False`` when the address is not banned. A firewall timeout is
		raised as :class:`FirewallOperationFailed` and the ban is kept.
		"""
		addr = normalize_address(address) or address
		with self._locks.hold(addr):
			record = self.store.get(addr)
			if record is None:
				return False
			outcome = self._retire(record, "manual")
		if outcome == RETRY:
			raise FirewallOperationFailed("remove", addr, "timed out, ban kept", timed_out=True)
		if outcome == REMOVED:
			self._notify_unbanned(addr, "manual")
		return True

	def reconcile(self) -> ReconciliationReport:
		"""Rebuild the store from the firewall's rule set.

		Rules whose description does not decode are not ours to manage: they
		are reported and left in place. Raises :class:`FirewallUnavailable`
		when the rules cannot be listed at all.
		"""
		try:
			rules = self.firewall.list_blocks()
		except FirewallUnavailable:
			raise
		except FirewallOperationFailed as e:
			raise FirewallUnavailable("list", None, e.message, timed_out=e.timed_out) from e

		report = ReconciliationReport()
		restored: Dict[str, BanRecord] = {}
		for rule in rules:
			try:
				record = self._record_from_rule(rule)
			except ReconciliationMismatch as mismatch:
				logger.warning(str(mismatch))
				self.journal.action("reconcile", rule.address, "foreign", None, rule.description)
				report.foreign.append(mismatch)
				continue
			prior = restored.get(record.address)
			if prior is None or record.expires_at > prior.expires_at:
				restored[record.address] = record

		self.store.replace_all(restored.values())
		report.restored = self.store.list_all()
		logger.info("Reconciled bans with firewall", restored=len(report.restored), foreign=len(report.foreign))
		return report

	def _record_from_rule(self, rule: FirewallRule) -> BanRecord:
		addr = normalize_address(rule.address)
		if addr is None:
			raise ReconciliationMismatch(rule, ValueError(f"remote address {rule.address!r} is not a single IP"))
		try:
			expires_at = decode(rule.description)
		except MalformedTimestamp as e:
			raise ReconciliationMismatch(rule, e) from e
		return BanRecord(addr, expires_at - self.ban_duration, expires_at, RESTORED_REASON)

	def is_whitelisted(self, address: str) -> bool:
		return is_ip_whitelisted(address, self.whitelist)

	def is_banned(self, address: str, now: Optional[datetime] = None) -> bool:
		record = self.store.get(normalize_address(address) or address)
		return record is not None and not record.is_expired(self._now(now))

	def active_bans(self) -> List[BanRecord]:
		return self.store.list_all()
