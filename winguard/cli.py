import argparse
import sys
from typing import List, Optional

from .config import ensure_data_dir, load_config
from .db import Journal, query_actions, query_events
from .errors import FirewallOperationFailed, FirewallUnavailable
from .firewall import FirewallAdapter, build_firewall
from .manager import BanManager
from .timecodec import encode, utcnow


def _print_rows(rows) -> None:
	if not rows:
		print("<empty>")
		return
	cols = rows[0].keys()
	print("\t".join(cols))
	for r in rows:
		print("\t".join(str(r[c]) if r[c] is not None else "" for c in cols))


def _print_bans(manager: BanManager) -> None:
	bans = manager.active_bans()
	if not bans:
		print("<no bans>")
		return
	print("address\tcreated_at\texpires_at\treason")
	for record in bans:
		print(f"{record.address}\t{encode(record.created_at)}\t{encode(record.expires_at)}\t{record.reason}")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="winguard")
	parser.add_argument("--config", help="Path to a YAML config file")
	parser.add_argument("--dry-run", action="store_true", help="Do not touch the firewall")
	sub = parser.add_subparsers(dest="cmd", required=True)

	sub.add_parser("events").add_argument("--limit", type=int, default=50)
	sub.add_parser("actions").add_argument("--limit", type=int, default=50)
	sub.add_parser("bans", help="List bans recorded in the firewall")
	sub.add_parser("reconcile", help="Show which firewall rules are owned by the agent")
	p_unban = sub.add_parser("unban")
	p_unban.add_argument("ip")

	p_sim = sub.add_parser("simulate", help="Feed fake offenses through the ban engine")
	p_sim.add_argument("ip", help="Source IP to simulate")
	p_sim.add_argument("--count", type=int, default=5, help="Number of failed attempts to create")
	return parser


def main(argv: Optional[List[str]] = None, firewall: Optional[FirewallAdapter] = None) -> int:
	argv = argv if argv is not None else sys.argv[1:]
	args = build_parser().parse_args(argv)
	cfg = load_config(args.config)
	if args.dry_run:
		cfg.dry_run = True
	ensure_data_dir(cfg)
	journal = Journal(cfg.db_path)

	if args.cmd == "events":
		_print_rows(query_events(cfg.db_path, limit=args.limit))
		return 0
	if args.cmd == "actions":
		_print_rows(query_actions(cfg.db_path, limit=args.limit))
		return 0

	manager = BanManager.from_config(cfg, firewall or build_firewall(cfg), journal=journal)
	try:
		report = manager.reconcile()
	except FirewallUnavailable as e:
		print(f"Firewall unavailable: {e}", file=sys.stderr)
		return 2

	if args.cmd == "bans":
		_print_bans(manager)
		return 0
	if args.cmd == "reconcile":
		print(f"Owned bans: {len(report.restored)}")
		for mismatch in report.foreign:
			print(f"Foreign rule left in place: {mismatch.rule.name or mismatch.rule.address}\t{mismatch.rule.description!r}")
		return 0
	if args.cmd == "unban":
		try:
			lifted = manager.unban_now(args.ip)
		except FirewallOperationFailed as e:
			print(f"Unban failed: {e}", file=sys.stderr)
			return 1
		print(f"Unbanned {args.ip}" if lifted else f"{args.ip} is not banned")
		return 0 if lifted else 1
	if args.cmd == "simulate":
		record = None
		for _ in range(args.count):
			try:
				record = manager.consider_offense(args.ip, utcnow()) or record
			except FirewallOperationFailed as e:
				print(f"Ban failed: {e}", file=sys.stderr)
				return 1
		print(f"Simulated {args.count} offenses from {args.ip}.")
		if record is not None:
			print(f"{record.address} banned until {encode(record.expires_at)} UTC.")
		return 0
	return 1


if __name__ == "__main__":
	sys.exit(main())
