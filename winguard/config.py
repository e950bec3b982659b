import ipaddress
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml


def _default_data_dir() -> str:
	program_data = os.environ.get("PROGRAMDATA")
	if program_data:
		return os.path.join(program_data, "WinGuard")
	return os.path.expanduser("~/.local/share/winguard")


@dataclass
class AgentConfig:
	failures_threshold: int = 5
	window_seconds: int = 60
	ban_seconds: int = 900
	sweep_interval_seconds: int = 30
	firewall_timeout_seconds: float = 15.0
	log_paths: List[str] = field(default_factory=lambda: [
		r"C:\ProgramData\ssh\logs\sshd.log",
	])
	whitelist: List[str] = field(default_factory=lambda: [
		"127.0.0.1/32",
		"::1/128",
	])
	rule_group: str = "WinGuard"
	rule_prefix: str = "WinGuard Block"
	dry_run: bool = False
	data_dir: str = field(default_factory=_default_data_dir)

	def validate(self) -> "AgentConfig":
		if self.failures_threshold < 1:
			raise ValueError(f"failures_threshold must be >= 1, got {self.failures_threshold}")
		for name in ("window_seconds", "ban_seconds", "sweep_interval_seconds", "firewall_timeout_seconds"):
			if getattr(self, name) <= 0:
				raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
		if not self.rule_group.strip():
			raise ValueError("rule_group must not be empty")
		return self

	@property
	def db_path(self) -> str:
		return os.path.join(self.data_dir, "winguard.db")


CONFIG_PATH_CANDIDATES = [
	os.path.join(os.environ.get("PROGRAMDATA", r"C:\ProgramData"), "WinGuard", "config.yaml"),
	os.path.expanduser("~/.config/winguard/config.yaml"),
]

_INT_KEYS = ("failures_threshold", "window_seconds", "ban_seconds", "sweep_interval_seconds")
_STR_KEYS = ("rule_group", "rule_prefix", "data_dir")
_LIST_KEYS = ("log_paths", "whitelist")


def _load_yaml(path: str) -> dict:
	try:
		with open(path, "r", encoding="utf-8") as f:
			data = yaml.safe_load(f) or {}
	except FileNotFoundError:
		return {}
	if not isinstance(data, dict):
		raise ValueError(f"Config file {path} must contain a mapping")
	return data


def _apply(cfg: AgentConfig, over: dict) -> None:
	for key in _INT_KEYS:
		if key in over:
			setattr(cfg, key, int(over[key]))
	if "firewall_timeout_seconds" in over:
		cfg.firewall_timeout_seconds = float(over["firewall_timeout_seconds"])
	for key in _STR_KEYS:
		if key in over:
			setattr(cfg, key, str(over[key]))
	for key in _LIST_KEYS:
		if key in over and isinstance(over[key], list):
			setattr(cfg, key, [str(v) for v in over[key]])
	if "dry_run" in over:
		cfg.dry_run = bool(over["dry_run"])


def config_paths(path: Optional[str] = None) -> List[str]:
	if path:
		return [path]
	env_path = os.environ.get("WINGUARD_CONFIG")
	if env_path:
		return [env_path]
	return list(CONFIG_PATH_CANDIDATES)


def load_config(path: Optional[str] = None) -> AgentConfig:
	cfg = AgentConfig()
	for candidate in config_paths(path):
		over = _load_yaml(candidate)
		if over:
			_apply(cfg, over)
	return cfg.validate()


def is_ip_whitelisted(ip: str, whitelist: List[str]) -> bool:
	try:
		ip_obj = ipaddress.ip_address(ip)
	except ValueError:
		return False
	for net in whitelist:
		try:
			network = ipaddress.ip_network(net, strict=False)
		except ValueError:
			continue
		if ip_obj in network:
			return True
	return False


def normalize_address(address: str) -> Optional[str]:
	try:
		return str(ipaddress.ip_address(address.strip()))
	except (ValueError, AttributeError):
		return None


def ensure_data_dir(cfg: AgentConfig) -> str:
	os.makedirs(cfg.data_dir, exist_ok=True)
	return cfg.data_dir
