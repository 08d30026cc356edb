"""Stand-in for the agent CLI, driven by keywords in the prompt.

Invoked as ``python _fake_agent.py -p PROMPT --output-format stream-json
--verbose [--model M] [--resume ID]`` and writes stream-json records to
stdout. Also answers ``--version`` and ``auth status``.

Keywords:
    FAIL        exit 3 after the init record
    SLEEP       sleep for a long time after the init record (abort tests)
    KILLED      send itself SIGTERM after the init record
    SILENT      sleep for a long time without writing anything
    PERMISSION  print a raw interactive prompt line before the result
    RAW         print plain text only, no result record
    QUESTION    end with a question in the result text
"""

from __future__ import annotations

import json
import os
import signal
import sys
import time


def _emit(record: dict) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def _arg(args: list[str], flag: str) -> str | None:
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def main() -> int:
    args = sys.argv[1:]
    if args == ["--version"]:
        print("1.0.0-fake (agent)")
        return 0
    if args[:2] == ["auth", "status"]:
        print(json.dumps({"email": "dev@example.com", "orgId": "org-1", "authMethod": "oauth"}))
        return 0

    prompt = _arg(args, "-p") or ""
    model = _arg(args, "--model")
    resume = _arg(args, "--resume")

    if "SILENT" in prompt:
        time.sleep(60)
        return 0

    if "RAW" in prompt:
        print("plain text output from the agent", flush=True)
        return 0

    _emit(
        {
            "type": "system",
            "subtype": "init",
            "session_id": resume or "conv-fake-1",
            "model": model,
        }
    )
    if "FAIL" in prompt:
        return 3
    if "KILLED" in prompt:
        os.kill(os.getpid(), signal.SIGTERM)
        time.sleep(60)
        return 0
    if "SLEEP" in prompt:
        time.sleep(60)
        return 0
    if "PERMISSION" in prompt:
        print("Do you want to allow this tool? (y/n)", flush=True)

    text = f"done: {prompt}"
    if "QUESTION" in prompt:
        text = "I found two options. Which approach should I take?"
    _emit(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": text}]},
        }
    )
    _emit(
        {
            "type": "rate_limit_event",
            "rate_limit_info": {
                "rateLimitType": "five_hour",
                "status": "allowed",
                "resetsAt": 1767225600,
                "utilization": 0.25,
            },
        }
    )
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "result": text,
            "total_cost_usd": 0.01,
            "duration_ms": 5,
            "session_id": resume or "conv-fake-1",
        }
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
