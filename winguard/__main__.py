import sys

from .agent import Agent
from .config import load_config
from .errors import FirewallUnavailable
from .logger import logger


def main() -> int:
	cfg = load_config()

	logger.info("Starting WinGuard agent")
	logger.info(f"Configuration loaded: {cfg.failures_threshold} failures in {cfg.window_seconds}s bans for {cfg.ban_seconds}s")

	try:
		Agent(cfg).run_forever()
	except FirewallUnavailable as e:
		logger.error(f"Firewall backend unavailable, cannot start: {e}")
		return 1
	return 0


if __name__ == "__main__":
	sys.exit(main())
