from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("OUTBOX_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 30


def http_call(method: str, url: str, admin_key: str) -> tuple[int, dict[str, Any] | list[Any]]:
    req = urllib.request.Request(
        url=url,
        method=method,
        headers={"X-Internal-Admin-Key": admin_key},
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            return resp.status, (json.loads(raw) if raw else {})
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return e.code, {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return 0, {"error": {"reason": str(e)}}


def build_request(args: argparse.Namespace) -> tuple[str, str]:
    base = f"{args.base_url.rstrip('/')}/v1/internal/outbox"
    if args.command == "stats":
        return "GET", f"{base}/stats"
    if args.command == "list":
        query = f"?limit={args.limit}" + (f"&status={args.status}" if args.status else "")
        return "GET", f"{base}/messages{query}"
    if args.command == "show":
        return "GET", f"{base}/messages/{args.id}"
    # requeue / revive
    return "POST", f"{base}/messages/{args.id}/{args.command}"


def main() -> int:
    p = argparse.ArgumentParser(description="Inspect and repair the transactional outbox.")
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="message counts per status")

    ls = sub.add_parser("list", help="list messages")
    ls.add_argument("--status", choices=["READY", "CLAIMED", "FAILED", "DISPATCHED", "DEAD"])
    ls.add_argument("--limit", type=int, default=50)

    for name, help_text in (
        ("show", "show one message"),
        ("requeue", "FAILED -> READY"),
        ("revive", "DEAD -> READY (resets the retry counter)"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("id", help="outbox message id (uuid)")

    args = p.parse_args()

    if not args.admin_key:
        print("Missing INTERNAL_ADMIN_KEY (env) or --admin-key", file=sys.stderr)
        return 2

    method, url = build_request(args)
    status, body = http_call(method, url, args.admin_key)
    print(json.dumps(body, indent=2, sort_keys=True))
    return 0 if 200 <= status < 300 else 1


if __name__ == "__main__":
    raise SystemExit(main())
