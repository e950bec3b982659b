import threading
from typing import Optional

from .logger import logger
from .manager import BanManager, SweepResult


class ExpirySweeper(threading.Thread):
	"""Calls ``BanManager.sweep_expired`` every ``interval`` seconds until stopped."""

	def __init__(self, manager: BanManager, interval: float) -> None:
		super().__init__(name="winguard-sweeper", daemon=True)
		if interval <= 0:
			raise ValueError("interval must be positive")
		self.manager = manager
		self.interval = interval
		self._stop_event = threading.Event()
		self.iterations = 0

	def run_once(self) -> Optional[SweepResult]:
		self.iterations += 1
		try:
			result = self.manager.sweep_expired()
			self.manager.tracker.prune()
			return result
		except Exception:
			logger.exception("Expiry sweep failed; will run again next interval")
			return None

	def run(self) -> None:
		logger.info("Expiry sweeper started", interval=self.interval)
		while not self._stop_event.is_set():
			self.run_once()
			self._stop_event.wait(self.interval)
		logger.info("Expiry sweeper stopped")

	def stop(self, timeout: Optional[float] = None) -> None:
		self._stop_event.set()
		if self.is_alive():
			self.join(timeout)

	@property
	def stopped(self) -> bool:
		return self._stop_event.is_set()
