"""Deterministic local agent for CLI backend and loop integration tests."""

from __future__ import annotations

import argparse
import os
import sys

from ralph_loop.config import DEFAULT_COMPLETION_TOKEN

MODES = ("succeed", "fail", "silent", "succeed-after")


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt and loop context, then behave according to ``--mode``."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", choices=MODES, default="succeed")
    parser.add_argument("--token", default=DEFAULT_COMPLETION_TOKEN)
    parser.add_argument("--attempts", type=int, default=2, help="Used by succeed-after.")
    parser.add_argument("prompt", nargs="?", default=None)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    iteration = os.getenv("RALPH_LOOP_ITERATION", "0")
    task_index = os.getenv("RALPH_LOOP_TASK_INDEX", "0")
    task_attempt = int(os.getenv("RALPH_LOOP_TASK_ATTEMPT", "0"))

    print(f"prompt: {prompt.strip()}")
    print(
        f"stub: iteration={iteration} task={task_index} attempt={task_attempt} "
        f"ci={os.getenv('CI', '')} noninteractive={os.getenv('RALPH_LOOP_NONINTERACTIVE', '')}",
    )

    mode = args.mode
    if mode == "succeed-after":
        mode = "succeed" if task_attempt >= args.attempts else "fail"

    if mode == "succeed":
        print(f"Task {task_index} verified.")
        print(args.token)
        return 0
    if mode == "silent":
        print("I believe the task is finished.")
        return 0

    print(f"stub: diagnostics for iteration={iteration}", file=sys.stderr)
    print("Error: stub agent failed", file=sys.stderr)
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
