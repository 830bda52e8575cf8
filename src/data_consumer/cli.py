from __future__ import annotations

import argparse
import importlib
import json
import sys
import time
from typing import Any

from .backends import SqlBackend
from .config import ConsumerConfig, QuotaConfig
from .consumer import Consumer
from .errors import ConsumerError
from .logging_setup import setup_logging
from .registry import default_registry


def _load_callback(spec: str):
    if ":" not in spec:
        raise ValueError("Callback must be import path in form module:attr")
    module_name, attr = spec.split(":", 1)
    module = importlib.import_module(module_name)
    callback = getattr(module, attr)
    if not callable(callback):
        raise ValueError("Loaded callback must be callable as callback(item_id, consumer)")
    return callback


def _parse_every(raw: str | None) -> float | None:
    if raw is None:
        return None
    raw = raw.strip().lower()
    if raw.endswith("ms"):
        return float(raw[:-2]) / 1000
    if raw.endswith("s"):
        return float(raw[:-1])
    if raw.endswith("m"):
        return float(raw[:-1]) * 60
    if raw.endswith("h"):
        return float(raw[:-1]) * 3600
    return float(raw)


def _state_arg(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return raw


def _add_backend_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--type", required=True, help="Backend alias, see 'data-consumer types'")
    parser.add_argument("--root", default=None, help="Directory backend root")
    parser.add_argument("--create", action="store_true")
    parser.add_argument("--url", default=None, help="SQLAlchemy database URL")
    parser.add_argument("--table", default=None)
    parser.add_argument("--id-field", default="id")
    parser.add_argument("--flag-field", default="process_state")
    parser.add_argument("--init-id", default=None)
    for state in ("unprocessed", "working", "processed", "failed"):
        parser.add_argument(f"--{state}", default=None)


def _build_backend(args: argparse.Namespace):
    registry = default_registry()
    cls = registry.lookup(args.type)
    if issubclass(cls, SqlBackend):
        if not args.url:
            raise SystemExit(f"--url is required for backend type {args.type!r}")
        options = {
            "table": args.table,
            "id_field": args.id_field,
            "flag_field": args.flag_field,
            "unprocessed": _state_arg(args.unprocessed),
            "working": _state_arg(args.working),
            "processed": _state_arg(args.processed),
            "failed": _state_arg(args.failed),
        }
        if args.init_id is not None:
            options["init_id"] = _state_arg(args.init_id)
        return cls(args.url, **options)

    options = {
        "unprocessed": args.unprocessed,
        "working": args.working,
        "processed": args.processed,
        "failed": args.failed,
        "create": args.create,
    }
    if args.init_id is not None:
        options["init_id"] = args.init_id
    return cls(args.root, **options)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="data-consumer")
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run")
    run_p.add_argument("callback", help="Callback import path module:attr")
    _add_backend_args(run_p)
    run_p.add_argument("--max-passes", type=int, default=None)
    run_p.add_argument("--max-processed", type=int, default=None)
    run_p.add_argument("--max-failed", type=int, default=None)
    run_p.add_argument("--max-elapsed", type=float, default=None)
    run_p.add_argument("--sweep", dest="sweep", action="store_true", default=None)
    run_p.add_argument("--no-sweep", dest="sweep", action="store_false")
    run_p.add_argument("--keep-going", action="store_true", help="Log errors instead of aborting")
    run_p.add_argument("--every", default=None, help="Consume again every DURATION (e.g. 30s, 5m)")
    run_p.add_argument("--max-runs", type=int, default=None)

    counts_p = sub.add_parser("counts")
    _add_backend_args(counts_p)

    sub.add_parser("types")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_format, args.log_level)
    try:
        return _dispatch(parser, args)
    except ConsumerError as exc:
        print(f"data-consumer: error: {exc}", file=sys.stderr)
        return 2


def _dispatch(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    if args.command == "types":
        aliases = {alias: cls.__name__ for alias, cls in default_registry().aliases().items()}
        print(json.dumps(aliases))
        return 0

    if args.command == "counts":
        with _build_backend(args) as backend:
            print(json.dumps(backend.counts()))
        return 0

    if args.command == "run":
        callback = _load_callback(args.callback)
        config = ConsumerConfig(
            quota=QuotaConfig(
                max_passes=args.max_passes,
                max_processed=args.max_processed,
                max_failed=args.max_failed,
                max_elapsed=args.max_elapsed,
            ),
            sweep=args.sweep,
            on_error=(lambda message: None) if args.keep_going else None,
        )
        every = _parse_every(args.every)
        runs = 0
        with Consumer(_build_backend(args), config) as consumer:
            while True:
                start = time.monotonic()
                stats = consumer.consume(callback)
                runs += 1
                print(json.dumps(stats.to_dict()))
                if every is None or (args.max_runs is not None and runs >= args.max_runs):
                    break
                time.sleep(max(0.0, every - (time.monotonic() - start)))
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
