"""Local deterministic agent for CLI backend integration tests and dry runs."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

REVIEW_MARKER = "DECISION:"


def main(argv: list[str] | None = None) -> int:
    """Echo a summary of the prompt, or a review verdict for review prompts."""

    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt")
    source.add_argument("--prompt-file")
    parser.add_argument("--model", default="")
    parser.add_argument("--allowed-tools", default="")
    parser.add_argument("--decision", choices=("APPROVE", "REJECT"), default="APPROVE")
    parser.add_argument("--confidence", default="0.9")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)

    prompt = args.prompt if args.prompt is not None else Path(args.prompt_file).read_text("utf-8")

    if args.stderr:
        sys.stderr.write(f"{args.stderr}\n")
    if args.exit_code != 0:
        return args.exit_code

    if REVIEW_MARKER in prompt:
        sys.stdout.write(
            f"DECISION: {args.decision}\n"
            f"CONFIDENCE: {args.confidence}\n"
            "FEEDBACK: Reviewed by echo agent.\n",
        )
        return 0

    lines = [line.strip() for line in prompt.splitlines() if line.strip()]
    headline = lines[0] if lines else "empty prompt"
    sys.stdout.write(f"echo_agent completed: {headline}\n")
    if args.model:
        sys.stdout.write(f"model: {args.model}\n")
    if args.allowed_tools:
        sys.stdout.write(f"tools: {args.allowed_tools}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
