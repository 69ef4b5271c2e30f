# -*- coding: utf-8 -*-
"""Command line interface for the registration integrity service."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from expo_registry.infrastructure.persistence.models import Base, ExhibitionModel
from expo_registry.infrastructure.persistence.session import make_session_factory, session_scope

from . import get_config, get_coordinator, get_engine, get_reconciler
from .errors import RETRYABLE_CODES, RegistrationServiceError, validation_failed
from .logging_utils import setup_logging
from .observability import MetricsServer
from .types import ContactInfo, RegistrationPayload

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_RETRYABLE = 75

RECONCILE_STEPS = (
    "orphan-registrations",
    "custom-fields",
    "duplicate-visitors",
    "duplicate-registrations",
    "duplicate-numbers",
    "orphan-visitors",
    "visitor-aggregates",
    "exhibition-counts",
)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, sort_keys=True))


def _emit_error(err: RegistrationServiceError) -> int:
    print(
        json.dumps(
            {"code": err.detail.code, "message": err.detail.message, "details": err.detail.details},
            ensure_ascii=False,
        ),
        file=sys.stderr,
    )
    return EXIT_RETRYABLE if err.code in RETRYABLE_CODES else EXIT_FAILED


def payload_from_mapping(data: Mapping[str, Any]) -> RegistrationPayload:
    """Build a payload from the camelCase JSON document accepted by ``submit``."""

    if not isinstance(data, Mapping):
        raise validation_failed("payload must be a JSON object")
    custom = data.get("customFieldData") or {}
    interests = data.get("selectedInterests") or ()
    if not isinstance(custom, Mapping):
        raise validation_failed("customFieldData must be an object")
    if isinstance(interests, str) or not isinstance(interests, (list, tuple)):
        raise validation_failed("selectedInterests must be a list")
    return RegistrationPayload(
        exhibition_id=str(data.get("exhibitionId") or ""),
        contact=ContactInfo(phone=data.get("phone"), email=data.get("email")),
        category=str(data.get("category") or ""),
        custom_field_data=dict(custom),
        selected_interests=tuple(interests),
        exhibitor_id=data.get("exhibitorId"),
        registration_source=str(data.get("registrationSource") or "online"),
    )


def _read_document(source: str) -> Any:
    if source == "-":
        return json.load(sys.stdin)
    return json.loads(Path(source).read_text(encoding="utf-8"))


def _run_init_db(args: argparse.Namespace) -> int:
    Base.metadata.create_all(get_engine())
    _emit({"status": "ok", "tables": sorted(Base.metadata.tables)})
    return EXIT_OK


def _run_register_exhibition(args: argparse.Namespace) -> int:
    with session_scope(make_session_factory(get_engine())) as session:
        exhibition = session.get(ExhibitionModel, args.exhibition_id)
        if exhibition is None:
            exhibition = ExhibitionModel(id=args.exhibition_id, current_registrations_count=0)
            session.add(exhibition)
        exhibition.name = args.name
        exhibition.tagline = args.tagline
    _emit({"exhibitionId": args.exhibition_id, "name": args.name, "tagline": args.tagline})
    return EXIT_OK


def _run_submit(args: argparse.Namespace) -> int:
    try:
        document = _read_document(args.payload)
    except (OSError, ValueError) as exc:
        print(f"cannot read payload: {exc}", file=sys.stderr)
        return EXIT_USAGE
    try:
        result = get_coordinator().submit(payload_from_mapping(document))
    except RegistrationServiceError as err:
        return _emit_error(err)
    _emit(result.as_dict())
    return EXIT_OK


def _reconcile_actions(apply: bool) -> Dict[str, Callable[[], Any]]:
    reconciler = get_reconciler()
    return {
        "orphan-registrations": lambda: reconciler.find_orphan_registrations(apply).as_dict(),
        "custom-fields": lambda: reconciler.reconcile_all_custom_fields(apply).as_dict(),
        "duplicate-visitors": lambda: reconciler.find_duplicate_visitors_by_phone(apply).as_dict(),
        "duplicate-registrations": lambda: [g.as_dict() for g in reconciler.find_duplicate_registrations()],
        "duplicate-numbers": lambda: [g.as_dict() for g in reconciler.find_duplicate_registration_numbers()],
        "orphan-visitors": lambda: reconciler.find_orphan_visitors(apply).as_dict(),
        "visitor-aggregates": lambda: [a.as_dict() for a in reconciler.recompute_visitor_aggregates(apply)],
        "exhibition-counts": lambda: [c.as_dict() for c in reconciler.recompute_exhibition_counts(apply)],
    }


def _run_reconcile(args: argparse.Namespace) -> int:
    if not args.only:
        _emit(get_reconciler().run_full_pass(args.apply).as_dict())
        return EXIT_OK
    actions = _reconcile_actions(args.apply)
    _emit({step: actions[step]() for step in args.only})
    return EXIT_OK


def _run_duplicate_registrations(args: argparse.Namespace) -> int:
    _emit([group.as_dict() for group in get_reconciler().find_duplicate_registrations()])
    return EXIT_OK


def _run_confirm_duplicates(args: argparse.Namespace) -> int:
    try:
        report = get_reconciler().delete_confirmed_duplicate_registrations(args.registration_ids, args.operator)
    except RegistrationServiceError as err:
        return _emit_error(err)
    _emit(report.as_dict())
    return EXIT_OK


def _run_merge_visitors(args: argparse.Namespace) -> int:
    coordinator = get_coordinator()
    try:
        aggregates = coordinator.identity.merge_duplicate(args.keep_id, args.merge_id)
    except RegistrationServiceError as err:
        return _emit_error(err)
    _emit(aggregates.as_dict())
    return EXIT_OK


def _run_metrics(args: argparse.Namespace) -> int:
    config = get_config()
    port = args.port or config.metrics_port
    server = MetricsServer()
    bound = server.start(port)
    _emit({"metricsPort": bound})
    if args.oneshot:
        server.stop()
        return EXIT_OK
    try:
        if args.duration is not None:
            time.sleep(args.duration)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:  # pragma: no cover - manual interrupt
        pass
    finally:
        server.stop()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="expo-registry", description="Registration integrity service CLI")
    parser.add_argument("--log-level", default="WARNING", help="Root log level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    init_cmd = sub.add_parser("init-db", help="Create the registration tables")
    init_cmd.set_defaults(func=_run_init_db)

    exhibition_cmd = sub.add_parser("register-exhibition", help="Create or update an exhibition mirror row")
    exhibition_cmd.add_argument("exhibition_id")
    exhibition_cmd.add_argument("name")
    exhibition_cmd.add_argument("--tagline", help="Short code used as the registration number scope")
    exhibition_cmd.set_defaults(func=_run_register_exhibition)

    submit_cmd = sub.add_parser("submit", help="Submit one registration from a JSON document")
    submit_cmd.add_argument("payload", nargs="?", default="-", help="Path to the JSON payload, or - for stdin")
    submit_cmd.set_defaults(func=_run_submit)

    reconcile_cmd = sub.add_parser("reconcile", help="Detect and repair integrity drift")
    reconcile_cmd.add_argument("--apply", action="store_true", help="Apply repairs instead of a dry run")
    reconcile_cmd.add_argument(
        "--only",
        action="append",
        choices=RECONCILE_STEPS,
        help="Run only the named step (repeatable)",
    )
    reconcile_cmd.set_defaults(func=_run_reconcile)

    duplicates_cmd = sub.add_parser("duplicate-registrations", help="Report duplicate registrations")
    duplicates_cmd.set_defaults(func=_run_duplicate_registrations)

    confirm_cmd = sub.add_parser("confirm-duplicates", help="Delete operator-confirmed duplicate registrations")
    confirm_cmd.add_argument("registration_ids", nargs="+")
    confirm_cmd.add_argument("--operator", required=True, help="Name recorded in the audit log")
    confirm_cmd.set_defaults(func=_run_confirm_duplicates)

    merge_cmd = sub.add_parser("merge-visitors", help="Merge one visitor into another")
    merge_cmd.add_argument("keep_id")
    merge_cmd.add_argument("merge_id")
    merge_cmd.set_defaults(func=_run_merge_visitors)

    metrics_cmd = sub.add_parser("serve-metrics", help="Run the Prometheus exporter")
    metrics_cmd.add_argument("--port", type=int, help="Exporter port")
    metrics_cmd.add_argument("--oneshot", action="store_true", help="Start, report the port and exit")
    metrics_cmd.add_argument("--duration", type=float, help="Stop after this many seconds")
    metrics_cmd.set_defaults(func=_run_metrics)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING))
    result = args.func(args)
    return int(result)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
