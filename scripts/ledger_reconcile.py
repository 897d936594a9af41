"""Fetch and print a ledger reconciliation report as JSON."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for balance reconciliation checks."""

    parser = argparse.ArgumentParser(description="Compare stored lesson balances with their event history.")
    parser.add_argument("--ledger-url", default="http://localhost:8002")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument("--teacher-id", type=int, default=None, help="Replay one account instead of all")
    parser.add_argument("--student-id", type=int, default=None)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.student_id is not None:
        if args.teacher_id is None:
            raise SystemExit("--student-id requires --teacher-id")
        headers["x-teacher-id"] = str(args.teacher_id)
        resp = httpx.get(f"{args.ledger_url}/reconciliation/{args.student_id}", headers=headers, timeout=10.0)
    else:
        resp = httpx.get(
            f"{args.ledger_url}/reconciliation",
            params={"limit": args.limit},
            headers=headers,
            timeout=10.0,
        )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
