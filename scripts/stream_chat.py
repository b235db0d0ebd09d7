"""Post one message to a running OpsAgent backend and print the streamed frames."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Iterator, Optional, Tuple

import requests

DEFAULT_URL = "http://localhost:8000/api/chat"


def iter_frames(lines: Iterator[str]) -> Iterator[Tuple[str, dict]]:
    """Group ``event:``/``data:`` lines into (event, payload) pairs."""
    event: Optional[str] = None
    data_lines = []
    for line in lines:
        if not line:
            if event and data_lines:
                yield event, json.loads("\n".join(data_lines))
            event, data_lines = None, []
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].strip())


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("message", help="Question to send")
    parser.add_argument("--workspace", choices=["security", "observability"], default="security")
    parser.add_argument("--url", default=os.getenv("OPSAGENT_URL", DEFAULT_URL))
    parser.add_argument("--token", default=os.getenv("APP_ACCESS_TOKEN", ""))
    parser.add_argument("--raw", action="store_true", help="Print every frame as JSON")
    args = parser.parse_args(argv)

    headers = {"Accept": "text/event-stream"}
    if args.token:
        headers["Authorization"] = f"Bearer {args.token}"

    with requests.post(
        args.url,
        json={"message": args.message, "workspace": args.workspace},
        headers=headers,
        stream=True,
        timeout=(10, 600),
    ) as resp:
        if resp.status_code != 200:
            print(f"HTTP {resp.status_code}: {resp.text[:400]}", file=sys.stderr)
            return 1
        ok = True
        for event, payload in iter_frames(resp.iter_lines(decode_unicode=True)):
            if args.raw:
                print(json.dumps({"event": event, "data": payload}, ensure_ascii=False))
            elif event == "delta":
                print(payload.get("text", ""), end="", flush=True)
            elif event == "status":
                print(f"[{payload.get('stage')}] {payload.get('message', '')}".rstrip(), file=sys.stderr)
            elif event == "panel":
                print(f"[panel] {payload.get('kind')} {payload.get('title')} ({payload.get('panel_id')})", file=sys.stderr)
            elif event == "done":
                ok = bool(payload.get("ok"))
                print()
            elif event == "error":
                ok = False
                print(f"\n[error:{payload.get('stage')}] {payload.get('message')}", file=sys.stderr)
        return 0 if ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
