import json
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import AgentConfig, normalize_address
from .errors import FirewallOperationFailed, FirewallUnavailable
from .logger import logger


@dataclass(frozen=True)
class FirewallRule:
	address: str
	description: str
	name: Optional[str] = None


class FirewallAdapter(ABC):
	"""Add, remove and list inbound block rules keyed by source address.

	Every failing call raises :class:`FirewallOperationFailed`. ``check`` and
	``list_blocks`` raise :class:`FirewallUnavailable` when the backend cannot
	be reached at all. ``add_block`` replaces any rule already installed for the
	address.
	"""

	@abstractmethod
	def add_block(self, address: str, description: str) -> None:
		...

	@abstractmethod
	def remove_block(self, address: str) -> None:
		...

	@abstractmethod
	def list_blocks(self) -> List[FirewallRule]:
		...

	def check(self) -> None:
		try:
			self.list_blocks()
		except FirewallUnavailable:
			raise
		except FirewallOperationFailed as e:
			raise FirewallUnavailable("check", None, e.message, timed_out=e.timed_out) from e


def _ps_quote(value: str) -> str:
	return "'" + value.replace("'", "''") + "'"


class PowerShellFirewall(FirewallAdapter):
	"""Windows Defender Firewall through the NetSecurity PowerShell module.

	All rules owned by the agent share one rule group. Listing goes through
	``ConvertTo-Json`` so the output does not depend on the console language.
	"""

	def __init__(self, rule_group: str, rule_prefix: str, timeout: float, executable: str = "powershell.exe") -> None:
		self.rule_group = rule_group
		self.rule_prefix = rule_prefix
		self.timeout = timeout
		self.executable = executable

	def rule_name(self, address: str) -> str:
		return f"{self.rule_prefix} {address}"

	def _run(self, operation: str, address: Optional[str], script: str) -> subprocess.CompletedProcess:
		cmd = [self.executable, "-NoProfile", "-NonInteractive", "-Command", script]
		try:
			res = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False, timeout=self.timeout)
		except subprocess.TimeoutExpired:
			raise FirewallOperationFailed(operation, address, f"timed out after {self.timeout}s", timed_out=True)
		except OSError as e:
			raise FirewallUnavailable(operation, address, f"cannot start {self.executable}: {e}")
		if res.returncode != 0:
			raise FirewallOperationFailed(operation, address, (res.stderr or res.stdout).strip() or f"exit status {res.returncode}")
		return res

	def _checked_address(self, operation: str, address: str) -> str:
		normalized = normalize_address(address)
		if normalized is None:
			raise FirewallOperationFailed(operation, address, "not an IP address")
		return normalized

	def add_block(self, address: str, description: str) -> None:
		address = self._checked_address("add", address)
		name = self.rule_name(address)
		# Replaces a leftover rule of the same name so a retried ban cannot fail on it.
		script = (
			f"Get-NetFirewallRule -Name {_ps_quote(name)} -ErrorAction SilentlyContinue | Remove-NetFirewallRule -ErrorAction Stop; "
			f"New-NetFirewallRule -Name {_ps_quote(name)} -DisplayName {_ps_quote(name)} "
			f"-Group {_ps_quote(self.rule_group)} -Direction Inbound -Action Block "
			f"-RemoteAddress {_ps_quote(address)} -Description {_ps_quote(description)} "
			f"-ErrorAction Stop | Out-Null"
		)
		self._run("add", address, script)

	def remove_block(self, address: str) -> None:
		address = self._checked_address("remove", address)
		script = f"Remove-NetFirewallRule -Name {_ps_quote(self.rule_name(address))} -ErrorAction Stop"
		self._run("remove", address, script)

	def list_blocks(self) -> List[FirewallRule]:
		script = (
			f"$rules = @(Get-NetFirewallRule -Group {_ps_quote(self.rule_group)} -ErrorAction SilentlyContinue | "
			"ForEach-Object { [pscustomobject]@{ Name = $_.Name; Description = $_.Description; "
			"RemoteAddress = @(($_ | Get-NetFirewallAddressFilter).RemoteAddress) } }); "
			"ConvertTo-Json -InputObject $rules -Compress -Depth 3"
		)
		try:
			res = self._run("list", None, script)
		except FirewallUnavailable:
			raise
		except FirewallOperationFailed as e:
			raise FirewallUnavailable("list", None, e.message, timed_out=e.timed_out)
		return parse_rule_listing(res.stdout)

	def check(self) -> None:
		try:
			self._run("check", None, "Get-Command New-NetFirewallRule -ErrorAction Stop | Out-Null")
		except FirewallUnavailable:
			raise
		except FirewallOperationFailed as e:
			raise FirewallUnavailable("check", None, e.message, timed_out=e.timed_out)


def parse_rule_listing(output: str) -> List[FirewallRule]:
	output = (output or "").strip()
	if not output:
		return []
	try:
		data = json.loads(output)
	except ValueError as e:
		raise FirewallUnavailable("list", None, f"unreadable rule listing: {e}")
	if isinstance(data, dict):
		data = [data]
	rules: List[FirewallRule] = []
	for item in data:
		if not isinstance(item, dict):
			continue
		remote = item.get("RemoteAddress") or []
		if isinstance(remote, str):
			remote = [remote]
		address = remote[0] if len(remote) == 1 else ",".join(str(r) for r in remote)
		rules.append(FirewallRule(
			address=str(address),
			description=item.get("Description") or "",
			name=item.get("Name"),
		))
	return rules


class DryRunFirewall(FirewallAdapter):
	"""Keeps rules in memory and only logs what would be changed."""

	def __init__(self, rules: Optional[Iterable[FirewallRule]] = None, rule_prefix: str = "WinGuard Block") -> None:
		self.rule_prefix = rule_prefix
		self._lock = threading.Lock()
		self._rules: Dict[str, FirewallRule] = {}
		for rule in rules or []:
			self._rules[rule.address] = rule

	def add_block(self, address: str, description: str) -> None:
		with self._lock:
			self._rules[address] = FirewallRule(address, description, f"{self.rule_prefix} {address}")
		logger.info("[DRY-RUN] Would add firewall block", ip=address, description=description)

	def remove_block(self, address: str) -> None:
		with self._lock:
			if self._rules.pop(address, None) is None:
				raise FirewallOperationFailed("remove", address, "rule not found")
		logger.info("[DRY-RUN] Would remove firewall block", ip=address)

	def list_blocks(self) -> List[FirewallRule]:
		with self._lock:
			return list(self._rules.values())


def build_firewall(cfg: AgentConfig) -> FirewallAdapter:
	if cfg.dry_run:
		return DryRunFirewall(rule_prefix=cfg.rule_prefix)
	return PowerShellFirewall(cfg.rule_group, cfg.rule_prefix, cfg.firewall_timeout_seconds)
