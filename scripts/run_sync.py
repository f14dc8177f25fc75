#!/usr/bin/env python3
"""Trigger a sync run through the API and poll it until it finishes.

Usage:
    python scripts/run_sync.py \
        --backend-url https://sync.example.com \
        --entity-type order --direction a_to_b

    python scripts/run_sync.py --backend-url ... --recover <task-id>

Exit code 0 if the task completes, 1 if it fails, is interrupted, or the
API cannot be reached.
"""

import argparse
import sys
import time
from typing import Optional, Tuple

import httpx

TIMEOUT = 15.0
TERMINAL = {"completed", "failed", "interrupted"}


def start_run(client: httpx.Client, args: argparse.Namespace) -> Tuple[Optional[str], str]:
    """POST /api/v1/sync/runs (or recover an existing task) and return the task id."""
    try:
        if args.recover:
            response = client.post(f"/api/v1/sync/tasks/{args.recover}/recover")
        else:
            payload = {"entity_type": args.entity_type, "direction": args.direction}
            if args.strategy:
                payload["conflict_strategy"] = args.strategy
            if args.skip_existing:
                payload["filters"] = {"skip_existing": True}
            response = client.post("/api/v1/sync/runs", json=payload)
    except httpx.HTTPError as exc:
        return None, f"HTTP error: {exc}"

    if response.status_code == 409:
        return None, f"Already running: {response.json().get('detail')}"
    if response.status_code not in (200, 202):
        return None, f"HTTP {response.status_code}: {response.text}"

    data = response.json()
    return data.get("task_id") or data.get("id"), "started"


def poll_task(client: httpx.Client, task_id: str, interval: float) -> dict:
    """GET the task until its status is terminal, printing progress lines."""
    while True:
        response = client.get(f"/api/v1/sync/tasks/{task_id}")
        response.raise_for_status()
        task = response.json()
        print(
            f"{task['status']:<12} {task['processed_count']}/{task['total_entities']} "
            f"({task['progress_percent']}%)  failed={task['failed_count']}"
        )
        if task["status"] in TERMINAL:
            return task
        time.sleep(interval)


def print_summary(task: dict) -> None:
    """Print the final counters and the recorded errors."""
    separator = "-" * 70
    print()
    print(separator)
    print(f"{'TASK':<12} {task['id']}")
    print(f"{'STATUS':<12} {task['status']}")
    created = task["created_count"]
    updated = task["updated_count"]
    print(f"{'CREATED':<12} A={created['platform_a']} B={created['platform_b']}")
    print(f"{'UPDATED':<12} A={updated['platform_a']} B={updated['platform_b']}")
    print(f"{'SKIPPED':<12} {task['skipped_count']}")
    print(f"{'FAILED':<12} {task['failed_count']}")
    print(separator)
    for error in task.get("errors", []):
        print(f"  {error.get('entity_id') or '-':<20} {error['error_type']:<22} {error['message']}")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Trigger and follow a sync run")
    parser.add_argument("--backend-url", required=True, help="Base URL of the sync API")
    parser.add_argument("--entity-type", default="order", choices=["order", "inventory"])
    parser.add_argument(
        "--direction",
        default="a_to_b",
        choices=["a_to_b", "b_to_a", "bidirectional"],
    )
    parser.add_argument("--strategy", help="Conflict strategy for this run")
    parser.add_argument("--skip-existing", action="store_true", help="Skip already-mapped entities")
    parser.add_argument("--recover", metavar="TASK_ID", help="Resume an interrupted task instead")
    parser.add_argument("--interval", type=float, default=2.0, help="Polling interval in seconds")
    args = parser.parse_args()

    with httpx.Client(base_url=args.backend_url.rstrip("/"), timeout=TIMEOUT) as client:
        task_id, detail = start_run(client, args)
        if task_id is None:
            print(f"Could not start sync: {detail}")
            sys.exit(1)
        print(f"Task {task_id} {detail}")

        try:
            task = poll_task(client, task_id, args.interval)
        except httpx.HTTPError as exc:
            print(f"Lost contact with the API: {exc}")
            sys.exit(1)

    print_summary(task)
    sys.exit(0 if task["status"] == "completed" else 1)


if __name__ == "__main__":
    main()
