"""Stand-in worker process used by the session tests.

Usage: python _fake_worker.py PROMPT_FILE

The prompt selects the behaviour with a `MODE:<name>` marker; without one the
worker runs in `ok` mode.
"""

from __future__ import annotations

import json
import re
import sys
import time
from pathlib import Path


def _say(content: str, kind: str = "message") -> None:
    print(json.dumps({"kind": kind, "content": content}), flush=True)


def main() -> int:
    prompt = Path(sys.argv[1]).read_text(encoding="utf-8") if len(sys.argv) > 1 else sys.stdin.read()
    match = re.search(r"MODE:(\w+)", prompt)
    mode = match.group(1) if match else "ok"

    if mode == "ok":
        _say("starting")
        print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}}), flush=True)
        return 0
    if mode == "crash":
        time.sleep(0.5)
        for n in range(1, 4):
            _say(f"step {n}")
        print("boom: worker gave up", file=sys.stderr, flush=True)
        return 3
    if mode == "hang":
        _say("working forever")
        time.sleep(60)
        return 0
    if mode == "approval":
        _say("Please approve this change before I continue")
        time.sleep(60)
        return 0
    if mode == "slow":
        time.sleep(0.5)
        for n in range(1, 4):
            _say(f"tick {n}")
            time.sleep(0.1)
        return 0
    print(f"unknown mode {mode}", file=sys.stderr, flush=True)
    return 2


if __name__ == "__main__":
    sys.exit(main())
