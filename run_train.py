#!/usr/bin/env python3
"""
Submit and track training jobs through the Training Centre API.

Usage:
    python3 run_train.py --model-type cnn --dataset mnist          # Start a job
    python3 run_train.py --model-type cnn --dataset mnist --ab-testing --wait
    python3 run_train.py --status JOB_ID                           # Show job status
    python3 run_train.py --cancel JOB_ID                           # Cancel a job
    python3 run_train.py --wait JOB_ID                             # Block until finished
    python3 run_train.py --performance                             # Recent accuracy history
"""
import argparse
import json
import os
import sys
import time
import uuid

import requests

_TERMINAL = {"completed", "failed"}


def _headers(args) -> dict:
    headers = {"X-User-Id": args.user}
    if args.token:
        headers["Authorization"] = f"Bearer {args.token}"
    return headers


def _call(method: str, url: str, args, **kwargs) -> dict:
    resp = requests.request(method, url, headers={**_headers(args), **kwargs.pop("headers", {})},
                            timeout=args.timeout, **kwargs)
    try:
        body = resp.json()
    except ValueError:
        print(f"  ERROR: {resp.status_code} {resp.text[:200]}", file=sys.stderr)
        sys.exit(1)
    if not body.get("ok", False):
        print(f"  ERROR ({resp.status_code}): {body.get('error')}", file=sys.stderr)
        sys.exit(1)
    return body.get("data") or {}


def _print_status(data: dict) -> None:
    print(f"  Job:     {data['job_id']}")
    print(f"  State:   {data['state']}")
    if data.get("updated_at"):
        print(f"  Updated: {data['updated_at']}")
    if data.get("stale"):
        print("  WARNING: job has not been polled within its schedule")
    if data.get("result"):
        print(f"  Result:  {json.dumps(data['result'], sort_keys=True)}")
    if data.get("error"):
        print(f"  Error:   {data['error']}")


def _wait(base: str, job_id: str, args) -> dict:
    t0 = time.time()
    last_state = None
    while True:
        data = _call("GET", f"{base}/api/jobs/{job_id}", args)
        if data["state"] != last_state:
            print(f"  [{time.time() - t0:7.1f}s] {data['state']}")
            last_state = data["state"]
        if data["state"] in _TERMINAL:
            return data
        time.sleep(args.interval)


def main():
    """Parse arguments and run the requested job operation against the API."""
    parser = argparse.ArgumentParser(
        description="Start, inspect, cancel and wait for training jobs",
    )
    parser.add_argument("--url", default=os.environ.get("TC_URL", "http://localhost:8000"),
                        help="API base URL (default: $TC_URL or http://localhost:8000)")
    parser.add_argument("--user", default=os.environ.get("TC_USER", os.environ.get("USER", "")),
                        help="Caller identity sent as X-User-Id")
    parser.add_argument("--token", default=os.environ.get("TC_API_TOKEN", ""),
                        help="Bearer token for the API")
    parser.add_argument("--timeout", type=float, default=10.0, help="HTTP timeout (seconds)")
    parser.add_argument("--interval", type=float, default=5.0,
                        help="Seconds between status checks with --wait")

    parser.add_argument("--model-type", help="Model type to train")
    parser.add_argument("--dataset", help="Dataset to train on")
    parser.add_argument("--ab-testing", action="store_true", help="Run an A/B comparison")
    parser.add_argument("--auto-tuning", action="store_true", help="Run hyperparameter tuning")
    parser.add_argument("--hyperparameters", default="{}",
                        help="JSON object of hyperparameters")
    parser.add_argument("--request-token", default=None,
                        help="Idempotency key (default: random; reuse to retry a submission)")

    parser.add_argument("--status", metavar="JOB_ID", help="Show job status and exit")
    parser.add_argument("--cancel", metavar="JOB_ID", help="Cancel a job and exit")
    parser.add_argument("--wait", nargs="?", const="", default=None, metavar="JOB_ID",
                        help="Wait for a job to finish (the new job when starting one)")
    parser.add_argument("--performance", action="store_true",
                        help="Show recent accuracy history and exit")
    args = parser.parse_args()

    base = args.url.rstrip("/")

    if args.status:
        _print_status(_call("GET", f"{base}/api/jobs/{args.status}", args))
        return

    if args.cancel:
        _print_status(_call("POST", f"{base}/api/jobs/{args.cancel}/cancel", args))
        return

    if args.performance:
        rows = _call("GET", f"{base}/api/metrics/performance", args)
        if not rows:
            print("  No completed jobs yet.")
        for row in rows:
            print(f"  {row['date']}  {row['accuracy']:.4f}  {row.get('model_type', '')}")
        return

    if args.wait and not args.model_type:
        _print_status(_wait(base, args.wait, args))
        return

    if not args.model_type or not args.dataset:
        parser.error("--model-type and --dataset are required to start a job")

    try:
        hyperparameters = json.loads(args.hyperparameters)
    except json.JSONDecodeError as e:
        parser.error(f"--hyperparameters is not valid JSON: {e}")

    token = args.request_token or uuid.uuid4().hex
    body = {
        "modelType": args.model_type,
        "dataset": args.dataset,
        "abTesting": args.ab_testing,
        "autoTuning": args.auto_tuning,
        "hyperparameters": hyperparameters,
    }
    print(f"\n  Starting {args.model_type} on {args.dataset} (request token {token})")
    created = _call("POST", f"{base}/api/jobs", args, json=body, headers={"Idempotency-Key": token})
    print(f"  Job {created['job_id']} is {created['state']}")
    if created["state"] == "created":
        print("  Submission to the runner did not go through; rerun with "
              f"--request-token {token} to retry.")

    if args.wait is not None:
        _print_status(_wait(base, created["job_id"], args))


if __name__ == "__main__":
    main()
