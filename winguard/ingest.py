import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional

from .config import normalize_address
from .db import Journal
from .errors import FirewallOperationFailed
from .logger import logger
from .manager import BanManager
from .timecodec import utcnow

# OpenSSH for Windows (sshd.log):
#   Failed password for invalid user test from 1.2.3.4 port 54321 ssh2
#   Failed password for admin from 1.2.3.4 port 2222 ssh2
#   Invalid user test from 1.2.3.4 port 54321
SSH_FAILED_PATTERN = re.compile(r"Failed password for (?:(?P<invalid>invalid user )?(?P<user>\S+)) from (?P<ip>[0-9a-fA-F:\.]+)")
SSH_INVALID_PATTERN = re.compile(r"Invalid user (?P<user>\S+) from (?P<ip>[0-9a-fA-F:\.]+)")
# Security log event 4625 flattened onto one line by the event forwarder.
LOGON_FAILURE_PATTERN = re.compile(
	r"(?:Event\s*ID[:=]\s*4625\b|An account failed to log on).*?Source Network Address:\s*(?P<ip>\S+)",
	re.IGNORECASE,
)
ACCOUNT_NAME_PATTERN = re.compile(r"Account Name:\s*(?P<user>[^\s-][^\s]*)", re.IGNORECASE)


@dataclass
class OffenseEvent:
	address: str
	timestamp: datetime
	category: str
	username: Optional[str] = None
	raw: Optional[str] = None


def parse_line(line: str, now: Optional[datetime] = None) -> Optional[OffenseEvent]:
	"""Return the offense a log line describes, or None."""
	ts = now or utcnow()
	m = SSH_FAILED_PATTERN.search(line)
	if m:
		category = "ssh_invalid_user" if m.group("invalid") else "ssh_failed_password"
	else:
		m = SSH_INVALID_PATTERN.search(line)
		category = "ssh_invalid_user"
	if m:
		address = normalize_address(m.group("ip").rstrip("."))
		if address is None:
			return None
		return OffenseEvent(address, ts, category, m.group("user"), line)

	m = LOGON_FAILURE_PATTERN.search(line)
	if m:
		address = normalize_address(m.group("ip"))
		if address is None:
			# "-" when the logon did not come over the network
			return None
		users = ACCOUNT_NAME_PATTERN.findall(line)
		return OffenseEvent(address, ts, "windows_logon_failure", users[-1] if users else None, line)
	return None


def follow(path: str, stop: threading.Event, poll_interval: float = 0.5, from_end: bool = True) -> Iterator[str]:
	# Tail -F like reader with reopen on rotation
	inode = None
	f = None
	first_open = True
	try:
		while not stop.is_set():
			try:
				st = os.stat(path)
				if f is None or inode != st.st_ino or st.st_size < f.tell():
					if f:
						f.close()
					f = open(path, "r", encoding="utf-8", errors="ignore")
					if from_end and first_open:
						f.seek(0, os.SEEK_END)
					first_open = False
					inode = st.st_ino
				next_line = f.readline()
				if next_line:
					yield next_line.rstrip("\r\n")
				else:
					stop.wait(poll_interval)
			except FileNotFoundError:
				# File may not exist yet; wait
				first_open = False
				stop.wait(poll_interval * 2)
			except OSError as e:
				logger.warning("Could not read log file", path=path, error=str(e))
				stop.wait(poll_interval * 2)
	finally:
		if f:
			f.close()


class LogIngestor:
	"""Feeds offenses from log files (or any event iterable) into a BanManager."""

	def __init__(
		self,
		manager: BanManager,
		paths: Iterable[str] = (),
		journal: Optional[Journal] = None,
		parser: Callable[[str], Optional[OffenseEvent]] = parse_line,
		poll_interval: float = 0.5,
	) -> None:
		self.manager = manager
		self.paths = list(paths)
		self.journal = journal or Journal(None)
		self.parser = parser
		self.poll_interval = poll_interval
		self._stop = threading.Event()
		self._threads: List[threading.Thread] = []

	def handle_event(self, event: OffenseEvent) -> bool:
		"""Process one offense. Returns True when it caused a ban."""
		if self.manager.is_whitelisted(event.address) or self.manager.is_banned(event.address):
			return False
		self.journal.offense(event.timestamp, event.address, event.username, event.category, event.raw)
		logger.security_event(event.category, event.address, f"User: {event.username or 'unknown'}")
		try:
			return self.manager.consider_offense(event.address, event.timestamp) is not None
		except FirewallOperationFailed as e:
			logger.warning("Ban not applied, next offense will retry", ip=event.address, error=e.message)
		except Exception:
			logger.exception("Unexpected error while handling offense", ip=event.address)
		return False

	def handle_line(self, line: str) -> bool:
		event = self.parser(line)
		if event is None:
			return False
		return self.handle_event(event)

	def ingest(self, events: Iterable[OffenseEvent]) -> int:
		bans = 0
		for event in events:
			if self._stop.is_set():
				break
			if self.handle_event(event):
				bans += 1
		return bans

	def _consume(self, path: str) -> None:
		logger.info("Watching log file", path=path)
		for line in follow(path, self._stop, self.poll_interval):
			try:
				self.handle_line(line)
			except Exception:
				logger.exception("Could not process log line", path=path)

	def start(self) -> None:
		for path in self.paths:
			t = threading.Thread(target=self._consume, args=(path,), name=f"winguard-ingest-{os.path.basename(path)}", daemon=True)
			t.start()
			self._threads.append(t)

	def stop(self, timeout: Optional[float] = None) -> None:
		self._stop.set()
		for t in self._threads:
			t.join(timeout)
		self._threads = []
