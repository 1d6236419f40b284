"""
Command-line interface for policysync.

Usage (examples):
  - List the known kinds:
      psync kinds

  - Plan only (no HTTP):
      psync plan --file ./policy.yml --state ./policysync.state.json

  - Apply (HTTP CRUD):
      psync apply --file ./policy.yml --base-url http://127.0.0.1:8080 --token TEST

  - Refresh stored state and report drift / tear everything down:
      psync refresh --base-url http://127.0.0.1:8080
      psync destroy --base-url http://127.0.0.1:8080

  - Read one entity by identity:
      psync lookup group admins --base-url http://127.0.0.1:8080
"""

from __future__ import annotations

import argparse
import contextlib
import json
import os
import signal
import sys
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .core.config import AppConfig, load_config
from .core.driver import Driver, ItemResult, PlanItem, load_declarations, summarize
from .core.errors import (
    ConfigError,
    DescriptorError,
    PolicySyncError,
    RemoteFailure,
    TransportError,
    ValidationError,
)
from .core.loader import DescriptorLoader
from .core.logging_setup import build_logger
from .core.reconciler import Reconciler
from .core.state_store import StateStore
from .core.transport import Transport

EXIT_OK = 0
EXIT_GENERIC_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_REMOTE_ERROR = 4

_STATUS_ORDER = ["CREATED", "UPDATED", "REPLACED", "UNCHANGED", "DELETED", "IN_SYNC", "DRIFTED", "GONE", "CANCELLED", "ERROR"]


def _summarize_counts(counts: Dict[str, int]) -> str:
    keys = [k for k in _STATUS_ORDER if counts.get(k)] or ["UNCHANGED"]
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in keys)


def _exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, ConfigError):
        return EXIT_CONFIG_ERROR
    if isinstance(exc, (ValidationError, DescriptorError)):
        return EXIT_VALIDATION_ERROR
    if isinstance(exc, (RemoteFailure, TransportError)):
        return EXIT_REMOTE_ERROR
    return EXIT_GENERIC_ERROR


def _exit_code_from_results(results: Iterable[ItemResult]) -> int:
    codes = [_exit_code_for(r.exc) if r.exc is not None else EXIT_GENERIC_ERROR
             for r in results if r.status in ("ERROR", "CANCELLED")]
    if not codes:
        return EXIT_OK
    if EXIT_REMOTE_ERROR in codes:
        return EXIT_REMOTE_ERROR
    return max(codes)


@contextlib.contextmanager
def _cancel_on_sigint() -> Iterator[threading.Event]:
    """Ctrl-C sets the cancellation event; in-flight calls finish without state updates."""
    cancel = threading.Event()
    try:
        previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    except ValueError:
        # not the main thread
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


# ---------------------------- Argument parser -------------------------------

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", action="append", default=None, help="YAML config file (default search applies)")
    p.add_argument("--dry-run", action="store_true", default=None, help="Plan only, no network calls")
    p.add_argument("--concurrency", type=int, default=None, help="Parallel instances")

    p.add_argument("--base-url", default=None, help="Policy service base URL")
    p.add_argument("--token", default=None, help="Bearer token")
    p.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    p.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")

    p.add_argument("--search-path", action="append", default=None, help="Descriptor search path (repeatable)")
    p.add_argument("--state", default=None, help="State file path")

    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level")
    p.add_argument("--file-level", default=None, help="File log level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="psync", description="Reconcile declared network policy with the policy service")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("plan", "Show what apply would do"),
        ("apply", "Create / update / delete to match the declaration file"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("--file", "-f", required=True, help="Declaration file (YAML)")
        _add_common(sp)

    _add_common(sub.add_parser("refresh", help="Read every stored instance and report drift"))
    _add_common(sub.add_parser("destroy", help="Delete every stored instance"))

    lk = sub.add_parser("lookup", help="Read one entity by identity")
    lk.add_argument("kind")
    lk.add_argument("identity")
    _add_common(lk)

    kd = sub.add_parser("kinds", help="List the known entity kinds")
    kd.add_argument("--search-path", action="append", default=None, help="Descriptor search path (repeatable)")
    return parser


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Dict[str, Any]] = {
        "app": {"dry_run": args.dry_run, "concurrency": args.concurrency},
        "service": {
            "base_url": args.base_url,
            "token": args.token,
            "verify_tls": args.verify_tls,
            "timeout_sec": args.timeout_sec,
        },
        "descriptors": {"search_paths": args.search_path},
        "state": {"path": args.state},
        "logging": {
            "base_dir": args.logs_dir,
            "console_level": args.console_level,
            "file_level": args.file_level,
        },
    }
    if args.cmd == "plan":
        overrides["app"]["dry_run"] = True
    return {s: {k: v for k, v in kv.items() if v is not None} for s, kv in overrides.items()}


def _load(args: argparse.Namespace) -> AppConfig:
    if args.config:
        missing = [p for p in args.config if not os.path.exists(p)]
        if missing:
            raise ConfigError(f"Config file not found: {', '.join(missing)}")
        return load_config(_cli_overrides(args), files=tuple(args.config))
    return load_config(_cli_overrides(args))


# ----------------------------- Rendering ------------------------------------

def _print_plan(items: List[PlanItem]) -> None:
    for it in items:
        print(f"{it.op:<8} {it.address}  {it.reason}")


def _print_results(results: List[ItemResult]) -> None:
    for r in results:
        detail = r.error or r.reason
        print(f"{r.status:<9} {r.address}  {detail}".rstrip())
        if r.drift is not None and r.drift.drifted:
            for change in r.drift.changes:
                print(f"          ~ {change.field}: {json.dumps(change.stored)} -> {json.dumps(change.observed)}")


# ----------------------------- Commands -------------------------------------

def _cmd_kinds(args: argparse.Namespace) -> int:
    loader = DescriptorLoader(args.search_path)
    for name in loader.available():
        d = loader.load(name)
        print(f"{name:<16} {d.addressing:<18} {d.root:<16} {d.description}".rstrip())
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    cfg = _load(args)
    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )
    logger.info("Starting psync %s (dry_run=%s)", args.cmd, cfg.app.dry_run)

    loader = DescriptorLoader(cfg.descriptors.search_paths)
    store = StateStore(cfg.state.path)

    if cfg.app.dry_run:
        if args.cmd == "lookup":
            raise ConfigError("lookup sends a request and cannot run with --dry-run")
        driver = Driver(store, loader=loader, logger=logger)
        if args.cmd in ("plan", "apply"):
            items = driver.plan(load_declarations(args.file))
            _print_plan(items)
            invalid = [i for i in items if i.error is not None]
            return _exit_code_for(invalid[0].error) if invalid else EXIT_OK
        for address in sorted(store.records()):
            print(f"{args.cmd.upper():<8} {address}")
        return EXIT_OK

    with Transport(
        token=cfg.service.token,
        verify_tls=cfg.service.verify_tls,
        timeout_sec=cfg.service.timeout_sec,
        pool_maxsize=max(cfg.app.concurrency, 1),
    ) as transport, _cancel_on_sigint() as cancel:
        if args.cmd == "lookup":
            rec = Reconciler(loader.load(args.kind), transport, cfg.service.base_url, logger=logger)
            found = rec.lookup(args.identity, cancel=cancel)
            if found is None:
                print(f"{args.kind} '{args.identity}' not found", file=sys.stderr)
                return EXIT_GENERIC_ERROR
            print(json.dumps(found, indent=2, sort_keys=True))
            return EXIT_OK

        driver = Driver(
            store,
            transport=transport,
            base_url=cfg.service.base_url,
            loader=loader,
            concurrency=cfg.app.concurrency,
            logger=logger,
        )
        if args.cmd == "apply":
            results = driver.apply(load_declarations(args.file), cancel=cancel)
        elif args.cmd == "refresh":
            results = driver.refresh(cancel=cancel)
        else:
            results = driver.destroy(cancel=cancel)

    _print_results(results)
    summary = _summarize_counts(summarize(results))
    logger.info("%s summary: %s", args.cmd, summary)
    print(summary)
    return _exit_code_from_results(results)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        if args.cmd == "kinds":
            return _cmd_kinds(args)
        return _run(args)
    except PolicySyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return _exit_code_for(exc)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
