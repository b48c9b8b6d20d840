"""Worker wrapper: runs the worker CLI and reports through the status channels.

Usage::

    python -m taskrelay.spawn.wrapper --task-id task_001 --scratch-dir state/task-contexts \
        --timeout-minutes 30 --attempt 1 -- agent -p "..." --output-format text
"""

import argparse
import os
import subprocess
import sys
import threading
from typing import List, Optional

from ..tracking.status_channels import StatusChannels, parse_progress_line


EXIT_TIMEOUT = 124
EXIT_NOT_STARTED = 127


def run_worker(
    channels: StatusChannels,
    task_id: str,
    command: List[str],
    timeout_minutes: int,
    attempt: Optional[int] = None,
) -> int:
    """
    Run the worker command to completion.

    Progress is 10 at start and 100 on success; the final progress marker
    always carries the worker's exit code. Every write is tagged with
    ``attempt``; once the task has been redispatched they are dropped.

    Returns:
        Worker exit code
    """
    if not channels.is_stale(task_id, attempt):
        channels.write_pid(task_id, os.getpid())
    channels.write_progress(task_id, 10, "Worker started", attempt=attempt)
    channels.append_log(task_id, "info", f"Starting worker: {command[0]}", attempt=attempt)

    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except OSError as e:
        channels.write_progress(task_id, 0, f"Failed to start worker: {e}",
                                exit_code=EXIT_NOT_STARTED, attempt=attempt)
        channels.set_log_status(task_id, "failed", result=str(e), attempt=attempt)
        return EXIT_NOT_STARTED

    last_percentage = [10]

    def _reader():
        """Copy worker output into the task log, picking up progress lines."""
        if process.stdout is None:
            return
        for line in process.stdout:
            text = line.rstrip()
            if not text:
                continue
            marker = parse_progress_line(text)
            if marker is not None:
                last_percentage[0] = marker.percentage
                channels.write_progress(task_id, marker.percentage, marker.message, attempt=attempt)
            channels.append_log(task_id, "info", text, attempt=attempt)

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    try:
        returncode = process.wait(timeout=timeout_minutes * 60)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
        returncode = EXIT_TIMEOUT
        channels.append_log(task_id, "error", f"Worker timed out after {timeout_minutes} minutes",
                            attempt=attempt)
    finally:
        reader_thread.join(timeout=5)

    if returncode == 0:
        channels.write_progress(task_id, 100, "Task completed", exit_code=0, attempt=attempt)
        channels.set_log_status(task_id, "completed", result="Worker finished successfully", attempt=attempt)
    else:
        channels.write_progress(
            task_id,
            last_percentage[0],
            f"Worker exited with code {returncode}",
            exit_code=returncode,
            attempt=attempt,
        )
        channels.set_log_status(task_id, "failed", result=f"Worker exited with code {returncode}", attempt=attempt)
    return returncode


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a worker and report its status")
    parser.add_argument("--task-id", required=True)
    parser.add_argument("--scratch-dir", required=True)
    parser.add_argument("--timeout-minutes", type=int, default=30)
    parser.add_argument("--attempt", type=int, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)

    command = args.command
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no worker command given")

    channels = StatusChannels(args.scratch_dir)
    return run_worker(channels, args.task_id, command, args.timeout_minutes, attempt=args.attempt)


if __name__ == "__main__":
    sys.exit(main())
