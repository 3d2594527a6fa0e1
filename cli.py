from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _result(r: requests.Response) -> int:
    try:
        body = r.json()
    except ValueError:
        body = {"status_code": r.status_code, "text": r.text}
    _print(body)
    if not r.ok:
        return 1
    return 0 if not isinstance(body, dict) or body.get("ok", True) else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Service Lifecycle Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_status = sub.add_parser("status", help="Show per-service state")
    s_status.add_argument("service", nargs="?", help="Only this service")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    sub.add_parser("start", help="Start all services in dependency order")

    s_scale = sub.add_parser("scale", help="Change a service's replica count")
    s_scale.add_argument("service")
    s_scale.add_argument("replicas", type=int)

    s_roll = sub.add_parser("rollout", help="Roll a service out to a new version")
    s_roll.add_argument("service")
    s_roll.add_argument("version")
    s_roll.add_argument("--batch-size", type=int, default=None)
    s_roll.add_argument("--wait", action="store_true", help="Block until the rollout finishes")

    s_cancel = sub.add_parser("cancel", help="Cancel a running rollout before its next batch")
    s_cancel.add_argument("service")

    s_back = sub.add_parser("rollback", help="Roll a service back to its previous version")
    s_back.add_argument("service")

    sub.add_parser("backups", help="List backup jobs")

    s_bnow = sub.add_parser("backup-now", help="Run a backup job immediately")
    s_bnow.add_argument("job")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")

    if args.cmd == "status":
        url = f"{base}/services/{args.service}" if args.service else f"{base}/services"
        return _result(requests.get(url, timeout=10))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        return _result(requests.get(f"{base}/events", params=params, timeout=10))

    if args.cmd == "start":
        # Startup waits on health for every tier; give it room.
        return _result(requests.post(f"{base}/start", timeout=3600))

    if args.cmd == "scale":
        r = requests.post(f"{base}/services/{args.service}/scale", json={"replicas": args.replicas}, timeout=3600)
        return _result(r)

    if args.cmd == "rollout":
        payload = {"version": args.version, "batch_size": args.batch_size, "wait": args.wait}
        r = requests.post(f"{base}/services/{args.service}/rollout", json=payload, timeout=3600 if args.wait else 30)
        return _result(r)

    if args.cmd == "cancel":
        return _result(requests.post(f"{base}/services/{args.service}/rollout/cancel", timeout=10))

    if args.cmd == "rollback":
        return _result(requests.post(f"{base}/services/{args.service}/rollback", timeout=3600))

    if args.cmd == "backups":
        return _result(requests.get(f"{base}/backups", timeout=10))

    if args.cmd == "backup-now":
        return _result(requests.post(f"{base}/backups/{args.job}/run", timeout=30))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
