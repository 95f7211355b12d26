from __future__ import annotations

import argparse
import json
import signal
import sys

import requests
import uvicorn

from rsr.config import ConfigStore
from rsr.errors import ConfigError, InspectionError
from rsr.events import configure_logging, log_event
from rsr.reconciler import LoopControl, Reconciler
from rsr.settings import settings


VERSION = "1.0.0"


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def cmd_run(args: argparse.Namespace) -> int:
    configure_logging()
    log_event("INFO", "=== Replica Sync Reconciler starting ===")
    log_event("INFO", f"Version: {VERSION}")

    rec = Reconciler(ConfigStore(args.config))
    try:
        cfg = rec.preflight()
    except (InspectionError, ConfigError) as e:
        log_event("ERROR", f"{e}, exiting")
        return 1

    control = LoopControl(interval_s=cfg.manager.check_interval, max_cycles=1 if args.once else None)

    def _shutdown(signum, frame) -> None:
        log_event("INFO", "Received shutdown signal")
        control.request_stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    log_event("INFO", "All prerequisites met, starting manager")
    rec.run(control)
    log_event("INFO", "=== Replica Sync Reconciler stopped ===")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    configure_logging()
    log_event("INFO", f"Starting API on {args.host}:{args.port}")
    # main:app runs the reconcile loop for the lifetime of the server.
    uvicorn.run("main:app", host=args.host, port=args.port, reload=False, log_level="info")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    store = ConfigStore(args.config)
    problems = store.validate()
    if problems:
        for p in problems:
            print(f"ERROR: {p}", file=sys.stderr)
        print(f"Config validation failed with {len(problems)} error(s)", file=sys.stderr)
        return 1
    cfg = store.load()
    if not cfg.order:
        print("WARNING: No services configured", file=sys.stderr)
    print("Config validation passed")
    return 0


def cmd_logs(base: str, args: argparse.Namespace) -> int:
    params = {"tail": args.tail}
    if args.follow:
        params["follow"] = "true"
    r = requests.get(
        f"{base}/services/{args.service}/logs",
        params=params,
        stream=args.follow,
        timeout=None if args.follow else 30,
    )
    if not r.ok:
        _print(r.json())
        return 1
    print(f"=== Logs for {args.service} failover ===", file=sys.stderr)
    if args.follow:
        for chunk in r.iter_content(chunk_size=None):
            sys.stdout.write(chunk.decode("utf-8", errors="replace"))
            sys.stdout.flush()
        return 0
    sys.stdout.write(r.text)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Replica Sync Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the reconcile loop in the foreground")
    s_run.add_argument("--config", default=settings.config_path)
    s_run.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    s_srv = sub.add_parser("serve", help="Run the operator API with the reconcile loop in the background")
    s_srv.add_argument("--host", default="0.0.0.0")
    s_srv.add_argument("--port", type=int, default=8000)

    s_val = sub.add_parser("validate", help="Validate the configuration file")
    s_val.add_argument("--config", default=settings.config_path)

    sub.add_parser("services", help="List configured services")

    s_st = sub.add_parser("status", help="Show primary/failover status")
    s_st.add_argument("service", nargs="?")

    s_sync = sub.add_parser("sync", help="Remove the failover so the next cycle recreates it")
    s_sync.add_argument("service")

    s_logs = sub.add_parser("logs", help="Show the failover container's logs")
    s_logs.add_argument("service")
    s_logs.add_argument("-f", "--follow", action="store_true", help="Follow log output")
    s_logs.add_argument("--tail", type=int, default=100)

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    sub.add_parser("version", help="Show version")

    args = p.parse_args(argv)

    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "serve":
        return cmd_serve(args)
    if args.cmd == "validate":
        return cmd_validate(args)
    if args.cmd == "version":
        print(f"Replica Sync Reconciler v{VERSION}")
        return 0

    base = args.api.rstrip("/")

    if args.cmd == "services":
        _print(requests.get(f"{base}/services", timeout=10).json())
        return 0

    if args.cmd == "status":
        if args.service:
            r = requests.get(f"{base}/services/{args.service}/status", timeout=60)
            _print(r.json())
            return 0 if r.ok else 1
        out = []
        for svc in requests.get(f"{base}/services", timeout=10).json():
            out.append(requests.get(f"{base}/services/{svc['name']}/status", timeout=60).json())
        _print(out)
        return 0

    if args.cmd == "sync":
        auth = (settings.api_user or "admin", settings.api_password) if settings.api_password else None
        r = requests.post(f"{base}/services/{args.service}/sync", auth=auth, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "logs":
        return cmd_logs(base, args)

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
