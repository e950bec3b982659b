import time

import pytest

from conftest import RecordingFirewall
from winguard.agent import Agent
from winguard.config import AgentConfig
from winguard.errors import FirewallUnavailable


def make_config(tmp_path, log):
    return AgentConfig(
        failures_threshold=3,
        window_seconds=60,
        ban_seconds=900,
        sweep_interval_seconds=1,
        log_paths=[str(log)],
        data_dir=str(tmp_path / "data"),
    )


def test_agent_bans_from_tailed_log(tmp_path):
    log = tmp_path / "sshd.log"
    log.write_text("", encoding="utf-8")
    fw = RecordingFirewall()
    agent = Agent(make_config(tmp_path, log), firewall=fw)
    agent.ingestor.poll_interval = 0.01
    agent.start()
    try:
        time.sleep(0.2)
        with open(log, "a", encoding="utf-8") as f:
            for _ in range(3):
                f.write("sshd[7]: Failed password for root from 203.0.113.50 port 22 ssh2\n")
        deadline = time.monotonic() + 5
        while not fw.added and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        agent.stop()
    assert [a for a, _ in fw.added] == ["203.0.113.50"]
    assert agent.manager.is_banned("203.0.113.50")
    # rules survive shutdown
    assert [r.address for r in fw.list_blocks()] == ["203.0.113.50"]


def test_agent_refuses_to_start_without_firewall(tmp_path):
    from winguard.errors import FirewallOperationFailed

    fw = RecordingFirewall()
    fw.fail_list = FirewallOperationFailed("list", None, "not reachable")
    agent = Agent(make_config(tmp_path, tmp_path / "sshd.log"), firewall=fw)
    with pytest.raises(FirewallUnavailable):
        agent.start()
    assert not agent.sweeper.is_alive()
