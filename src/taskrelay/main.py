"""Command-line entry point."""

import argparse
import json
import sys
import time

from .config import Settings
from .core.exceptions import ConfigError, OrchestratorError
from .orchestrator import TaskRelay
from .runner.startup import print_configuration, validate_store


def run_loop(relay: TaskRelay) -> None:
    """Run the periodic queue until interrupted."""
    print("=" * 60)
    print("taskrelay")
    print("=" * 60)
    print_configuration(relay.settings)
    validate_store(relay.store)

    relay.start()
    print("\n[Queue] Running. Press Ctrl-C to stop.")
    try:
        while relay.queue.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n\n[Interrupted] Stopping queue...")
        relay.logger.info("Queue loop interrupted by user")
    finally:
        relay.stop()

    stats = relay.queue.stats()
    print("\n" + "=" * 60)
    print("Final state")
    print("=" * 60)
    print(f"Total tasks: {stats['total']}")
    print(f"Completed: {stats['completed']}")
    print(f"Failed: {stats['failed']}")
    print(f"Pending: {stats['pending']}")


def main(argv=None) -> int:
    """
    Main entry point with command-line argument parsing.

    Commands:
        run: start the periodic queue and block until Ctrl-C
        tick: run one queue tick
        status: print queue statistics
        config: print the configuration
    """
    parser = argparse.ArgumentParser(
        prog="taskrelay",
        description="Task orchestration: queue, pipelines and worker pools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  taskrelay run       # process the queue until Ctrl-C
  taskrelay tick      # run a single tick
  taskrelay status    # show task counts and queue state
        """
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Process the queue periodically")
    subparsers.add_parser("tick", help="Run one queue tick")
    subparsers.add_parser("status", help="Show queue statistics")
    subparsers.add_parser("config", help="Show configuration")

    args = parser.parse_args(argv)
    command = args.command or "run"

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if command == "config":
        print_configuration(settings)
        return 0

    relay = TaskRelay(settings)
    try:
        if command == "tick":
            summary = relay.process_queue()
            print(json.dumps(summary, indent=2, ensure_ascii=False))
        elif command == "status":
            print(json.dumps(relay.status(), indent=2, ensure_ascii=False))
        else:
            run_loop(relay)
    except OrchestratorError as e:
        relay.logger.log_error_with_traceback("Main", e, {"command": command})
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
