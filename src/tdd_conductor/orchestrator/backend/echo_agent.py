"""Local fake coding agent for runner and dispatcher integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back, optionally simulating provider failures."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--mode", default="agent")
    parser.add_argument("--result-json", default=None, help="JSON printed in a fenced block.")
    parser.add_argument("--stderr", default=None, help="Text written to stderr.")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument(
        "--fail-first",
        type=int,
        default=0,
        help="Print a resource_exhausted error for the first N calls (needs --state-file).",
    )
    parser.add_argument("--state-file", default=None)
    args = parser.parse_args(argv)

    if args.fail_first and args.state_file:
        state_path = Path(args.state_file)
        calls = int(state_path.read_text("utf-8")) if state_path.exists() else 0
        state_path.write_text(str(calls + 1), "utf-8")
        if calls < args.fail_first:
            print(f"call {calls + 1}: resource_exhausted, retry later", file=sys.stderr, flush=True)
            return 1

    print(f"mode={args.mode}", flush=True)
    print(args.prompt, flush=True)
    if args.sleep:
        time.sleep(args.sleep)
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    if args.result_json is not None:
        print("Here is the result:", flush=True)
        print(f"```json\n{args.result_json}\n```", flush=True)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
