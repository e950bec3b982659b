from typing import Optional


class WinGuardError(Exception):
	pass


class MalformedTimestamp(WinGuardError, ValueError):
	def __init__(self, value: object, expected_format: str) -> None:
		self.value = value
		self.expected_format = expected_format
		super().__init__(f"Malformed timestamp {value!r}, expected format {expected_format!r}")


class FirewallOperationFailed(WinGuardError):
	def __init__(self, operation: str, address: Optional[str], message: str, timed_out: bool = False) -> None:
		self.operation = operation
		self.address = address
		self.message = message
		self.timed_out = timed_out
		target = f" for {address}" if address else ""
		super().__init__(f"Firewall {operation}{target} failed: {message}")


class FirewallUnavailable(FirewallOperationFailed):
	"""The firewall backend cannot be reached at all."""


class ReconciliationMismatch(WinGuardError):
	def __init__(self, rule, cause: Exception) -> None:
		self.rule = rule
		self.cause = cause
		super().__init__(
			f"Firewall rule {rule.name or rule.address!r} has no parseable expiry "
			f"(description {rule.description!r}): {cause}"
		)
