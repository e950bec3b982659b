import os
import sqlite3
from datetime import datetime
from typing import List, Optional

from .logger import logger
from .timecodec import encode, utcnow


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS events (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	ts TEXT NOT NULL,
	src_ip TEXT NOT NULL,
	username TEXT,
	category TEXT NOT NULL,
	raw TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events (ts);
CREATE INDEX IF NOT EXISTS idx_events_ip ON events (src_ip);

CREATE TABLE IF NOT EXISTS actions (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	ts TEXT NOT NULL,
	action TEXT NOT NULL,
	src_ip TEXT,
	expires_at TEXT,
	status TEXT NOT NULL,
	message TEXT
);

CREATE INDEX IF NOT EXISTS idx_actions_ts ON actions (ts);
"""


def _connect(db_path: str) -> sqlite3.Connection:
	parent = os.path.dirname(db_path)
	if parent:
		os.makedirs(parent, exist_ok=True)
	conn = sqlite3.connect(db_path)
	conn.row_factory = sqlite3.Row
	return conn


def init_db(db_path: str) -> None:
	conn = _connect(db_path)
	try:
		conn.executescript(SCHEMA)
		conn.commit()
	finally:
		conn.close()


def insert_event(db_path: str, ts: Optional[datetime], src_ip: str, username: Optional[str], category: str, raw: Optional[str]) -> None:
	conn = _connect(db_path)
	try:
		conn.execute(
			"INSERT INTO events (ts, src_ip, username, category, raw) VALUES (?, ?, ?, ?, ?)",
			(encode(ts or utcnow()), src_ip, username, category, raw),
		)
		conn.commit()
	finally:
		conn.close()


def insert_action(db_path: str, ts: Optional[datetime], action: str, src_ip: Optional[str], expires_at: Optional[datetime], status: str, message: Optional[str]) -> None:
	conn = _connect(db_path)
	try:
		conn.execute(
			"INSERT INTO actions (ts, action, src_ip, expires_at, status, message) VALUES (?, ?, ?, ?, ?, ?)",
			(encode(ts or utcnow()), action, src_ip, encode(expires_at) if expires_at else None, status, message),
		)
		conn.commit()
	finally:
		conn.close()


def query_events(db_path: str, limit: int = 50) -> List[sqlite3.Row]:
	conn = _connect(db_path)
	try:
		cur = conn.execute("SELECT * FROM events ORDER BY ts DESC, id DESC LIMIT ?", (limit,))
		return cur.fetchall()
	finally:
		conn.close()


def query_actions(db_path: str, limit: int = 50) -> List[sqlite3.Row]:
	conn = _connect(db_path)
	try:
		cur = conn.execute("SELECT * FROM actions ORDER BY ts DESC, id DESC LIMIT ?", (limit,))
		return cur.fetchall()
	finally:
		conn.close()


class Journal:
	"""Audit trail that never lets a database error escape into the engine."""

	def __init__(self, db_path: Optional[str]) -> None:
		self.db_path = db_path
		if db_path:
			init_db(db_path)

	def offense(self, ts: datetime, src_ip: str, username: Optional[str], category: str, raw: Optional[str]) -> None:
		if not self.db_path:
			return
		try:
			insert_event(self.db_path, ts, src_ip, username, category, raw)
		except sqlite3.Error as e:
			logger.error("Could not journal offense", ip=src_ip, error=str(e))

	def action(self, action: str, src_ip: Optional[str], status: str, expires_at: Optional[datetime] = None, message: Optional[str] = None) -> None:
		if not self.db_path:
			return
		try:
			insert_action(self.db_path, None, action, src_ip, expires_at, status, message)
		except sqlite3.Error as e:
			logger.error("Could not journal action", action=action, ip=src_ip, error=str(e))
