#!/usr/bin/env python3
"""
fleet-safety CLI
================

Command-line interface for the fleet safety monitor.

Usage:
    fleet-safety run --config monitor.yaml          # Run the monitor
    fleet-safety run --config sim.yaml --duration 5 # Bounded run
    fleet-safety check --config monitor.yaml        # Validate config

    fleet-safety decide --nodes A B C --safety B    # One-shot arbitration
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from fleet_safety.arbiter import decide, evaluate_priorities
from fleet_safety.config import MonitorConfig, load_config
from fleet_safety.daemon import MonitorDaemon, setup_logging
from fleet_safety.errors import ConfigurationError, InternalConsistencyError

logger = logging.getLogger("fleet_safety")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_ABORT = 2


def cmd_run(args: argparse.Namespace) -> int:
    """Run the monitor until interrupted."""
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging(args.log_level or "INFO")
        logger.critical(f"Cannot start: {e}")
        return EXIT_CONFIG

    setup_logging(args.log_level or config.log_level)

    daemon = MonitorDaemon(config)
    try:
        cycles = daemon.run(duration=args.duration)
    except InternalConsistencyError as e:
        logger.critical(f"Aborting: {e}")
        return EXIT_ABORT

    status = daemon.get_status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
    else:
        arbiter = status["arbiter"]
        print(f"Cycles: {cycles}")
        print(f"Lowest safe priority: {arbiter['lowest_safe_priority']}")
        print(f"Last decision: {arbiter['decision']}")
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Validate a configuration file."""
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    if args.json:
        print(json.dumps({
            "bond_ids": list(config.bond_ids),
            "heartbeat_period": config.heartbeat_period,
            "heartbeat_timeout": config.heartbeat_timeout,
            "connect_timeout": config.connect_timeout,
            "loop_frequency_hz": config.loop_frequency_hz,
        }, indent=2))
        return EXIT_OK

    print("=== Priority Table ===")
    for priority, bond_id in config.priority_table():
        print(f"  {priority}: {bond_id}")
    print(f"\nHeartbeat: {config.heartbeat_period}s, timeout {config.heartbeat_timeout}s")
    print(f"Connect timeout: {config.connect_timeout}s")
    print(f"Loop: {config.loop_frequency_hz:.1f} Hz")
    if config.simulation.enabled:
        print(f"Simulation: {len(config.simulation.faults)} faults")
    return EXIT_OK


def cmd_decide(args: argparse.Namespace) -> int:
    """Arbitrate once from a set of flags, as the monitor would."""
    nodes: List[str] = args.nodes
    try:
        MonitorConfig(bond_ids=tuple(nodes)).validate()
    except ConfigurationError as e:
        print(f"Invalid node list: {e}")
        return EXIT_CONFIG

    unknown = [n for n in (args.safety or []) + (args.fatal or []) if n not in nodes]
    if unknown:
        print(f"Unknown node(s): {', '.join(unknown)}")
        return EXIT_CONFIG

    flags = [
        (n in (args.safety or []) or n in (args.fatal or []), n in (args.fatal or []))
        for n in nodes
    ]
    seed = -1 if args.startup_failed else len(nodes) - 1
    lowest = evaluate_priorities(flags, seed)
    decision = decide(lowest, nodes)

    if args.json:
        print(json.dumps({
            "lowest_safe_priority": lowest,
            "decision": decision.kind.value,
            "message": decision.message,
        }))
    else:
        print(f"Lowest safe priority: {lowest}")
        print(f"Decision: {decision}")
        print(f"Broadcast: {decision.message if decision.message is not None else '(none)'}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Priority-ordered fleet safety monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    p = subparsers.add_parser("run", help="Run the safety monitor")
    p.add_argument("--config", "-c", required=True, help="Monitor config YAML")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help="Log level (overrides config)")
    p.add_argument("--duration", type=float, default=None,
                   help="Stop after this many seconds")
    p.add_argument("--json", action="store_true", help="Print final status as JSON")
    p.set_defaults(func=cmd_run)

    # check
    p = subparsers.add_parser("check", help="Validate a config file")
    p.add_argument("--config", "-c", required=True, help="Monitor config YAML")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_check)

    # decide
    p = subparsers.add_parser("decide", help="One-shot arbitration")
    p.add_argument("--nodes", nargs="+", required=True,
                   help="Node ids in priority order, most senior first")
    p.add_argument("--safety", nargs="*", default=[], help="Nodes with safety active")
    p.add_argument("--fatal", nargs="*", default=[], help="Nodes with fatal active")
    p.add_argument("--startup-failed", action="store_true",
                   help="Seed as if a bond failed to form")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_decide)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if hasattr(args, "func"):
        return args.func(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
