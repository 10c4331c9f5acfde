#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import time
import urllib.error
import urllib.request
from typing import Any

DEMO_MESSAGES: list[tuple[str, str, str]] = [
    ("page", "1001", "Hi! Do you have any openings for a facial this week?"),
    ("page", "1002", "How much is the deluxe manicure?"),
    ("instagram", "2001", "Love your latest post 😍 do you do lash lifts?"),
    ("page", "1001", "Thursday afternoon would be perfect."),
]


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("INBOX_API_BASE_URL", "").strip() or "http://localhost:3001/api"
    return candidate.rstrip("/")


def _webhook_event(object_type: str, sender_id: str, text: str, sent_at_ms: int) -> dict[str, Any]:
    return {
        "object": object_type,
        "entry": [
            {
                "id": "demo-page",
                "time": sent_at_ms,
                "messaging": [
                    {
                        "sender": {"id": sender_id},
                        "recipient": {"id": "demo-page"},
                        "timestamp": sent_at_ms,
                        "message": {"mid": f"m_{sender_id}_{sent_at_ms}", "text": text},
                    }
                ],
            }
        ],
    }


def _post_webhook(base_url: str, payload: dict[str, Any]) -> str:
    req = urllib.request.Request(
        f"{base_url}/webhook",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req) as resp:
        return resp.read().decode("utf-8")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Post demo webhook events at a running inbox server.")
    parser.add_argument("--base-url", default=None, help="Inbox server API base URL")
    parser.add_argument("--delay", type=float, default=0.2, help="Seconds between events")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    base_url = _resolve_api_base_url(args.base_url)
    print(f"Seeding demo conversations at {base_url}")
    for object_type, sender_id, text in DEMO_MESSAGES:
        payload = _webhook_event(object_type, sender_id, text, int(time.time() * 1000))
        try:
            ack = _post_webhook(base_url, payload)
        except urllib.error.URLError as exc:
            raise SystemExit(f"webhook post failed: {exc}") from exc
        print(f"  {object_type}/{sender_id}: {ack}")
        time.sleep(args.delay)

    with urllib.request.urlopen(f"{base_url}/conversations") as resp:
        conversations = json.loads(resp.read().decode("utf-8"))
    print(f"Server now holds {len(conversations)} conversations")


if __name__ == "__main__":
    main()
