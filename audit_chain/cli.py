"""Offline verifier for audit logs and export bundles (``audit-verifier``)."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from collections.abc import Sequence

from audit_chain.core.crypto.hash_chain import is_hex_digest
from audit_chain.core.crypto.verification import (
    ChainVerificationResult,
    VerificationCancelled,
    verify_log_file,
)
from audit_chain.core.logging import configure_logging, get_logger
from audit_chain.modules.export.schemas import ManifestMalformed
from audit_chain.modules.export.verifier import verify_bundle_path

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_USAGE = 2
EXIT_EMPTY = 3
EXIT_CANCELLED = 4


def _head_hash(value: str) -> str:
    if not is_hex_digest(value):
        raise argparse.ArgumentTypeError("head hash must be 64 lowercase hex characters")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audit-verifier",
        description="Verify audit hash chains and export bundles offline.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    bundle = commands.add_parser("verify-bundle", help="Verify an export bundle.")
    bundle.add_argument("--bundle", required=True, help="Bundle directory or .zip archive.")
    bundle.add_argument(
        "--head-hash",
        type=_head_hash,
        default=None,
        help="Head hash obtained out of band; the bundle must end there.",
    )
    bundle.add_argument("--json", action="store_true", help="Print the report as JSON.")

    chain = commands.add_parser("verify-chain", help="Verify a JSONL audit log.")
    chain.add_argument("--input", required=True, help="Path to audit.jsonl.")
    chain.add_argument(
        "--head-hash",
        type=_head_hash,
        default=None,
        help="Head hash obtained out of band; the log must end there.",
    )
    chain.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Abort verification after this many seconds.",
    )
    chain.add_argument("--json", action="store_true", help="Print the result as JSON.")
    return parser


def _print_chain(result: ChainVerificationResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return
    if result.is_failed:
        for error in result.errors:
            print(error)
        print("chain FAILED")
    elif result.is_empty:
        print("audit log is empty")
    else:
        print(f"chain verified: {result.verified_count} events, head {result.head_hash}")


def _verify_bundle(args: argparse.Namespace) -> int:
    try:
        report = verify_bundle_path(args.bundle, args.head_hash)
    except (FileNotFoundError, ManifestMalformed) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for line in report.describe():
            print(line)
    return EXIT_OK if report.accepted else EXIT_REJECTED


def _verify_chain(args: argparse.Namespace) -> int:
    cancel_event = threading.Event()
    timer: threading.Timer | None = None
    if args.timeout is not None:
        timer = threading.Timer(args.timeout, cancel_event.set)
        timer.daemon = True
        timer.start()
    try:
        result = verify_log_file(args.input, args.head_hash, cancel_event=cancel_event)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except VerificationCancelled as exc:
        logger.warning("audit_verification_cancelled", position=exc.position)
        print(f"verification timed out after {exc.position} events", file=sys.stderr)
        return EXIT_CANCELLED
    finally:
        if timer is not None:
            timer.cancel()

    _print_chain(result, args.json)
    if result.is_failed:
        return EXIT_REJECTED
    if result.is_empty:
        return EXIT_EMPTY
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(stream=sys.stderr)
    if args.command == "verify-bundle":
        return _verify_bundle(args)
    return _verify_chain(args)


if __name__ == "__main__":
    raise SystemExit(main())
