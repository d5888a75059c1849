"""Local deterministic stand-in for a coding-agent CLI, used by integration tests."""

from __future__ import annotations

import argparse
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, optionally pad output, sleep, and exit with a chosen code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", default="")
    parser.add_argument("--output-chars", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--pr-url", default="")
    parser.add_argument("--tokens-used", type=int, default=None)
    args, _ = parser.parse_known_args(argv)

    prompt_lines = args.prompt.strip().splitlines()
    sys.stdout.write(f"echo: {prompt_lines[-1] if prompt_lines else ''}\n")
    if args.output_chars > 0:
        remaining = args.output_chars
        while remaining > 0:
            line = ("x" * 99 + "\n")[:remaining]
            sys.stdout.write(line)
            remaining -= len(line)
    if args.stderr:
        sys.stderr.write(f"{args.stderr}\n")
    if args.pr_url:
        sys.stdout.write(f"Opened PR: {args.pr_url}\n")
    if args.tokens_used is not None:
        sys.stdout.write(f"tokens used\n{args.tokens_used:,}\n")
    sys.stdout.flush()
    if args.sleep > 0:
        time.sleep(args.sleep)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
