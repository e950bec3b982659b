import os
import tempfile
from datetime import datetime, timedelta, timezone

# Must be set before winguard.logger is imported.
os.environ.setdefault("WINGUARD_LOG_DIR", tempfile.mkdtemp(prefix="winguard-logs-"))
for _var in ("WINGUARD_SLACK_WEBHOOK", "WINGUARD_NOTIFICATION_EMAILS", "WINGUARD_CONFIG"):
    os.environ.pop(_var, None)

import pytest

from winguard.errors import FirewallOperationFailed
from winguard.firewall import DryRunFirewall
from winguard.manager import BanManager
from winguard.tracker import OffenseTracker

T0 = datetime(2025, 9, 22, 18, 58, 8, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingFirewall(DryRunFirewall):
    """In-memory firewall that records calls and can be told to fail."""

    def __init__(self, rules=None):
        super().__init__(rules)
        self.added = []
        self.removed = []
        self.fail_add = []
        self.fail_after_add = []
        self.fail_remove = {}
        self.fail_list = None

    def add_block(self, address, description):
        self.added.append((address, description))
        if self.fail_add:
            raise self.fail_add.pop(0)
        super().add_block(address, description)
        if self.fail_after_add:
            raise self.fail_after_add.pop(0)

    def remove_block(self, address):
        self.removed.append(address)
        if address in self.fail_remove:
            raise self.fail_remove[address]
        super().remove_block(address)

    def list_blocks(self):
        if self.fail_list is not None:
            raise self.fail_list
        return super().list_blocks()


def transient_add_failure(address="10.0.0.5"):
    return FirewallOperationFailed("add", address, "The RPC server is unavailable.")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def firewall():
    return RecordingFirewall()


@pytest.fixture
def manager(firewall, clock):
    tracker = OffenseTracker(threshold=3, lookback_seconds=60, clock=clock)
    return BanManager(firewall, tracker, ban_seconds=15 * 60, clock=clock)
