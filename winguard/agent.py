import threading
from datetime import datetime
from typing import Callable, Optional

from .config import AgentConfig, ensure_data_dir
from .db import Journal
from .firewall import FirewallAdapter, build_firewall
from .ingest import LogIngestor
from .logger import logger
from .manager import BanManager, ReconciliationReport
from .sweeper import ExpirySweeper
from .timecodec import utcnow


class Agent:
	"""Wires the engine together and runs the ingestion and sweep drivers."""

	def __init__(self, cfg: AgentConfig, firewall: Optional[FirewallAdapter] = None, clock: Callable[[], datetime] = utcnow) -> None:
		self.cfg = cfg
		ensure_data_dir(cfg)
		self.journal = Journal(cfg.db_path)
		self.firewall = firewall or build_firewall(cfg)
		self.manager = BanManager.from_config(cfg, self.firewall, clock=clock, journal=self.journal)
		self.sweeper = ExpirySweeper(self.manager, cfg.sweep_interval_seconds)
		self.ingestor = LogIngestor(self.manager, cfg.log_paths, journal=self.journal)
		self._shutdown = threading.Event()

	def start(self) -> ReconciliationReport:
		# Raises FirewallUnavailable: nothing is started without a reachable backend.
		self.firewall.check()
		report = self.manager.reconcile()
		self.journal.action("start", None, "ok", message=f"restored={len(report.restored)} foreign={len(report.foreign)}")
		self.sweeper.start()
		self.ingestor.start()
		logger.info("Agent started", threshold=self.cfg.failures_threshold, window=self.cfg.window_seconds, ban=self.cfg.ban_seconds, dry_run=self.cfg.dry_run)
		return report

	def stop(self) -> None:
		self._shutdown.set()
		self.ingestor.stop(timeout=5)
		self.sweeper.stop(timeout=5)
		# Firewall rules stay in place; the next start reconciles them.
		self.journal.action("stop", None, "ok")
		logger.info("Agent stopped", active_bans=len(self.manager.store))

	def run_forever(self) -> None:
		self.start()
		try:
			while not self._shutdown.wait(1.0):
				pass
		except KeyboardInterrupt:
			logger.info("Interrupted, shutting down")
		finally:
			self.stop()
