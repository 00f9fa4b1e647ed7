"""Local stand-in for a coding agent, used by integration tests.

Accepts the claude command-line shape and behaves according to
`CURB_ECHO_*` environment variables so tests can script outcomes.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Read the task prompt, optionally touch the repo, and report usage."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", action="store_true", dest="print_mode")
    parser.add_argument("--append-system-prompt", default="")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--model", default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    args, _ = parser.parse_known_args(argv)

    prompt = sys.stdin.read() if not sys.stdin.isatty() else ""
    title = prompt.strip().splitlines()[0] if prompt.strip() else "empty prompt"

    sleep_seconds = float(os.getenv("CURB_ECHO_SLEEP", "0") or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    touch = os.getenv("CURB_ECHO_TOUCH")
    if touch:
        target = Path.cwd() / touch
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{title}\n")
        if os.getenv("CURB_ECHO_COMMIT") == "1":
            subprocess.run(["git", "add", "-A"], check=True)  # noqa: S607
            subprocess.run(  # noqa: S607
                ["git", "commit", "-q", "-m", f"echo: {title}"],
                check=True,
            )

    usage = {
        "input_tokens": int(os.getenv("CURB_ECHO_INPUT_TOKENS", "100")),
        "output_tokens": int(os.getenv("CURB_ECHO_OUTPUT_TOKENS", "50")),
    }
    report_usage = os.getenv("CURB_ECHO_NO_USAGE") != "1"
    cost = os.getenv("CURB_ECHO_COST")
    reply = f"done: {title}"
    if args.model:
        reply = f"{reply} [{args.model}]"

    if os.getenv("CURB_ECHO_GARBAGE") == "1":
        print("this is not json")
        print("neither is this")
    elif args.output_format == "stream-json":
        _emit_stream(reply=reply, usage=usage if report_usage else None, cost=cost)
    elif args.output_format == "json":
        result: dict[str, object] = {"type": "result", "is_error": False, "result": reply}
        if report_usage:
            result["usage"] = usage
        if cost:
            result["total_cost_usd"] = float(cost)
        print(json.dumps(result, ensure_ascii=False))
    else:
        print(reply)
        if report_usage:
            print(f"tokens used: {usage['input_tokens'] + usage['output_tokens']}")

    return int(os.getenv("CURB_ECHO_EXIT_CODE", "0"))


def _emit_stream(*, reply: str, usage: dict[str, int] | None, cost: str | None) -> None:
    events: list[dict[str, object]] = [
        {"type": "system", "subtype": "init"},
        {"type": "telemetry", "payload": {"ignored": True}},
        {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "id": "tool-1", "name": "Edit", "input": {}},
                    {"type": "text", "text": reply},
                ],
            },
        },
    ]
    result: dict[str, object] = {"type": "result", "is_error": False, "result": reply}
    if usage is not None:
        result["usage"] = usage
    if cost:
        result["total_cost_usd"] = float(cost)
    events.append(result)
    for event in events:
        print(json.dumps(event, ensure_ascii=False), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
