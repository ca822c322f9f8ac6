#!/usr/bin/env python3
"""
run_cluster.py - Two-Node Cluster Test Bed

Builds the node binary, starts an init node, waits for it to settle,
starts a join node, then follows both node logs until interrupted.
Every node process is terminated when the harness exits, whether by
Ctrl+C, SIGTERM, an error or a normal return.

Usage:
    python3 -m testbed.harness.run_cluster
    python3 -m testbed.harness.run_cluster --config scenarios/two_node.yaml
    python3 -m testbed.harness.run_cluster --skip-build --settle-delay 5
    python3 -m testbed.harness.run_cluster --dry-run
"""

import argparse
import dataclasses
import signal
import sys
import threading
from pathlib import Path
from typing import IO, Optional

# Add project root to path for imports
_project_root = Path(__file__).parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import yaml

from testbed.config.scenario import ClusterScenario, load_scenario
from testbed.harness.bootstrap import ClusterBootstrapper
from testbed.harness.build import build_binary
from testbed.harness.cleanup import CleanupCoordinator, signal_name
from testbed.harness.errors import HarnessError, HarnessInterrupted
from testbed.harness.launcher import NodeLauncher, ProcessGroup
from testbed.harness.log_tail import LogAggregator


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Start a two-node sucredb cluster and follow its logs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build, start n1 (init) and n2 (join), tail log1.txt and log2.txt
  python3 -m testbed.harness.run_cluster

  # Use addresses and paths from a scenario file
  python3 -m testbed.harness.run_cluster --config scenarios/two_node.yaml

  # Reuse an existing build and give the init node more time
  python3 -m testbed.harness.run_cluster --skip-build --settle-delay 5

Press Ctrl+C to stop both nodes.
        """
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to scenario YAML file (default: built-in two-node scenario)"
    )

    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="Do not run the build command; use the existing binary"
    )

    parser.add_argument(
        "--settle-delay",
        type=float,
        default=None,
        help="Override seconds to wait between init and join launches"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the scenario and print the node commands without starting anything"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print tracebacks for unexpected errors"
    )

    return parser.parse_args(argv)


def print_plan(scenario: ClusterScenario):
    """Print what a run would do."""
    launcher = NodeLauncher(scenario, ProcessGroup())

    print("\nScenario summary:")
    print(f"  Binary: {scenario.binary}")
    if scenario.build_command:
        print(f"  Build: {' '.join(scenario.build_command)} (in {scenario.build_cwd})")
    else:
        print("  Build: (none)")
    print(f"  Settle delay: {scenario.settle_delay_s:g}s")
    print(f"  Environment: {', '.join(f'{k}={v}' for k, v in scenario.env.items())}")
    for node in scenario.nodes:
        print(f"  {node.node_id} ({node.role}) > {node.log_path}")
        print(f"    {' '.join(launcher.build_command(node))}")


def run_cluster(scenario: ClusterScenario, skip_build: bool = False,
                output: Optional[IO[str]] = None,
                stop_event: Optional[threading.Event] = None) -> int:
    """
    Build, bootstrap and follow logs until stopped.

    Cleanup is armed before anything is launched and always runs before
    this function returns or propagates an exception.

    Returns:
        0 when the log loop is stopped through stop_event

    Raises:
        BuildFailure, SpawnFailure: Startup failures
        HarnessInterrupted: On SIGINT/SIGTERM (cleanup already done)
    """
    if stop_event is None:
        stop_event = threading.Event()

    group = ProcessGroup()
    # Handlers stay installed until the process exits; a late Ctrl+C is ignored
    coordinator = CleanupCoordinator(group, restore_on_exit=False)
    coordinator.register(stop_event.set)

    with coordinator:
        if not skip_build:
            build_binary(scenario)

        launcher = NodeLauncher(scenario, group)
        ClusterBootstrapper(scenario, launcher).bootstrap()

        print("\n" + "="*60)
        print("Following node logs (Ctrl+C to stop)")
        print("="*60 + "\n")
        sys.stdout.flush()

        aggregator = LogAggregator(scenario.log_paths, output=output)
        aggregator.run(stop_event)

    return 0


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        0 on success, 1 on failure, 128 + signal number when interrupted
    """
    args = parse_args(argv)

    try:
        if args.config is not None:
            print(f"Loading scenario from: {args.config}")
            scenario = load_scenario(str(args.config))
        else:
            scenario = ClusterScenario()

        if args.settle_delay is not None:
            print(f"Overriding settle delay: {scenario.settle_delay_s:g}s → {args.settle_delay:g}s")
            scenario = dataclasses.replace(scenario, settle_delay_s=args.settle_delay)

        if args.dry_run:
            print("\n" + "="*60)
            print("DRY RUN MODE - Validation Only")
            print("="*60)
            print_plan(scenario)
            print("\n(Use without --dry-run to execute)")
            return 0

        print("\n" + "="*60)
        print("sucredb Two-Node Test Bed")
        print("="*60)

        return run_cluster(scenario, skip_build=args.skip_build)

    except HarnessInterrupted as e:
        print(f"\nInterrupted by {signal_name(e.signum)}", file=sys.stderr)
        return 128 + e.signum

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 128 + signal.SIGINT

    except HarnessError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1

    except FileNotFoundError as e:
        print(f"\nERROR: File not found: {e}", file=sys.stderr)
        return 1

    except (ValueError, yaml.YAMLError) as e:
        print(f"\nERROR: Invalid scenario configuration:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except Exception as e:
        print(f"\nERROR: Unexpected error:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
