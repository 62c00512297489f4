"""Command-line entry point for scheduled and manual operations.

Designed to be invoked by cron (or any scheduler); there is no in-process
scheduler.

Examples:
  # Sync yesterday for one location
  pos-sync sync --client C1 --location L1 --provider fudo

  # Sync a window without writing consumption
  pos-sync sync --client C1 --location L1 --provider bistrosoft \
      --from 2025-01-01 --to 2025-01-07 --dry-run

  # Nightly fan-out and token rotation
  pos-sync daily
  pos-sync rotate
  pos-sync rotation-monitor

Environment:
  POS_DATA_ROOT      State directory (default: ./data)
  POS_CRED_KMS_KEY   64-char hex key for the credential vault
  POS_HTTP_TIMEOUT   Provider request timeout in seconds (default: 30)
  POS_SYNC_RETRIES   Immediate fetch retries per sync (default: 2)

Exit codes: 0 on success or a gate skip, 1 on a failed operation (or,
for rotation-monitor, when any credential is failing), 2 on bad input or
configuration.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from pos_sync.config import Settings
from pos_sync.consumption import get_client_consumption
from pos_sync.context import SyncContext
from pos_sync.credentials import rekey_all, save_credentials, verify_credentials
from pos_sync.exceptions import CircuitOpen, ConfigError, PosSyncError, ValidationError
from pos_sync.logging_utils import configure_logging
from pos_sync.models import DateRange
from pos_sync.rotation import (
    ROTATION_FAILURE_ALERT_THRESHOLD,
    CredentialRotator,
    find_rotation_failures,
)
from pos_sync.sync import run_daily, run_pos_sync
from pos_sync.utils import to_iso

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _window(args: argparse.Namespace, settings: Settings) -> DateRange | None:
    if not args.date_from and not args.date_to:
        return None
    return DateRange.parse(args.date_from, args.date_to, max_days=settings.max_range_days)


def _add_window_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--from", dest="date_from", default=None, help="Start date YYYY-MM-DD (default: yesterday UTC).")
    p.add_argument("--to", dest="date_to", default=None, help="End date YYYY-MM-DD (default: --from).")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pos-sync",
        description="Ingest POS sales into daily consumption snapshots.",
    )
    p.add_argument("--data-root", default=None, help="State directory (overrides POS_DATA_ROOT).")
    p.add_argument("--quiet", action="store_true", help="Less logging output.")
    p.add_argument(
        "--verbose", "--debug",
        action="store_true",
        dest="verbose",
        help="Verbose/debug logging output.",
    )
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("sync", help="Sync one location x provider.")
    s.add_argument("--client", required=True, help="Client id.")
    s.add_argument("--location", required=True, help="Location id.")
    s.add_argument("--provider", required=True, help="Provider id (fudo, bistrosoft, maxirest).")
    _add_window_args(s)
    s.add_argument("--dry-run", action="store_true", help="Do not write consumption.")

    d = sub.add_parser("daily", help="Sync every connected credential.")
    _add_window_args(d)
    d.add_argument("--provider", action="append", default=None, help="Restrict to a provider (repeatable).")
    d.add_argument("--concurrency", type=int, default=None, help="Parallel syncs (default: POS_DAILY_CONCURRENCY).")
    d.add_argument("--dry-run", action="store_true", help="Do not write consumption.")

    r = sub.add_parser("rotate", help="Rotate provider tokens that are about to expire.")
    r.add_argument("--provider", default="fudo", help="Provider whose tokens to rotate (default: fudo).")

    c = sub.add_parser("save-credentials", help="Encrypt and store credentials for a location.")
    c.add_argument("--location", required=True)
    c.add_argument("--provider", required=True)
    c.add_argument("--client", default=None, help="Owning client id (needed for daily syncs).")
    group = c.add_mutually_exclusive_group(required=True)
    group.add_argument("--api-key", default=None, help="API key only.")
    group.add_argument("--payload-json", default=None, help='Full payload, e.g. \'{"apiKey": "...", "env": "production"}\'.')

    v = sub.add_parser("verify-credentials", help="Check stored credentials with the provider.")
    v.add_argument("--location", required=True)
    v.add_argument("--provider", required=True)

    st = sub.add_parser("status", help="Show gate state and recent runs.")
    st.add_argument("--location", default=None)
    st.add_argument("--provider", default=None)
    st.add_argument("--limit", type=int, default=10)

    q = sub.add_parser("consumption", help="Print consumption rows for a client.")
    q.add_argument("--client", required=True)
    q.add_argument("--location", default=None)
    q.add_argument("--from", dest="date_from", required=True)
    q.add_argument("--to", dest="date_to", required=True)

    m = sub.add_parser("rotation-monitor", help="Report credentials whose rotations keep failing.")
    m.add_argument("--provider", default=None)
    m.add_argument(
        "--threshold", type=int, default=ROTATION_FAILURE_ALERT_THRESHOLD,
        help=f"Consecutive failures that raise an alert (default: {ROTATION_FAILURE_ALERT_THRESHOLD}).",
    )
    m.add_argument("--limit", type=int, default=5, help="Recent batch summaries to include.")

    k = sub.add_parser("rekey", help="Re-encrypt all credentials under a new vault key.")
    k.add_argument("--new-key", required=True, help="New 64-char hex key.")
    return p


def _cmd_sync(ctx: SyncContext, args: argparse.Namespace) -> int:
    result = run_pos_sync(
        ctx,
        client_id=args.client,
        location_id=args.location,
        provider=args.provider,
        window=_window(args, ctx.settings),
        dry_run=args.dry_run,
    )
    _print_json(result.to_dict())
    return 0


def _cmd_daily(ctx: SyncContext, args: argparse.Namespace) -> int:
    summary = run_daily(
        ctx,
        window=_window(args, ctx.settings),
        concurrency=args.concurrency,
        dry_run=args.dry_run,
        providers=args.provider,
    )
    _print_json(summary.to_dict())
    return 1 if summary.errors else 0


def _cmd_rotate(ctx: SyncContext, args: argparse.Namespace) -> int:
    rotator = CredentialRotator(
        ctx.store,
        ctx.key_hex,
        settings=ctx.settings,
        adapter_factory=ctx.adapter,
        clock=ctx.clock,
    )
    try:
        summary = rotator.run_batch(provider=args.provider)
    except CircuitOpen as e:
        _print_json({"status": "blocked", "scope": e.scope, "resume_at": to_iso(e.resume_at)})
        return 0
    _print_json(summary.to_dict())
    return 1 if summary.failures else 0


def _cmd_save(ctx: SyncContext, args: argparse.Namespace) -> int:
    if args.payload_json:
        try:
            payload = json.loads(args.payload_json)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--payload-json is not valid JSON: {e}") from e
    else:
        payload = {"apiKey": args.api_key}
    result = save_credentials(ctx, args.location, args.provider, payload, client_id=args.client)
    _print_json(result)
    return 0


def _cmd_verify(ctx: SyncContext, args: argparse.Namespace) -> int:
    result = verify_credentials(ctx, args.location, args.provider)
    _print_json(result)
    return 0 if result["valid"] else 1


def _cmd_status(ctx: SyncContext, args: argparse.Namespace) -> int:
    rows = ctx.store.list_sync_status()
    if args.location:
        rows = [r for r in rows if r.location_id == args.location]
    if args.provider:
        rows = [r for r in rows if r.provider == args.provider]
    runs = ctx.gate.recent_runs(args.location, args.provider, limit=args.limit)
    _print_json({"status": [r.to_dict() for r in rows], "runs": [r.to_dict() for r in runs]})
    return 0


def _cmd_consumption(ctx: SyncContext, args: argparse.Namespace) -> int:
    df = get_client_consumption(
        ctx.store, args.client, args.date_from, args.date_to, location_id=args.location
    )
    if df.empty:
        print("No consumption rows.")
    else:
        print(df.to_string(index=False))
    return 0


def _cmd_rotation_monitor(ctx: SyncContext, args: argparse.Namespace) -> int:
    alerts = find_rotation_failures(ctx.store, threshold=args.threshold, provider=args.provider)
    batches = ctx.store.list_rotation_metrics(
        provider=args.provider, metric_type="job_summary", limit=args.limit
    )
    _print_json(
        {
            "failures": [asdict(a) for a in alerts],
            "recent_batches": [m.to_dict() for m in batches],
        }
    )
    return 1 if alerts else 0


def _cmd_rekey(
ctx: SyncContext, args: argparse.Namespace) -> int:
    count = rekey_all(ctx, args.new_key)
    _print_json({"reencrypted": count})
    return 0


COMMANDS = {
    "sync": _cmd_sync,
    "daily": _cmd_daily,
    "rotate": _cmd_rotate,
    "save-credentials": _cmd_save,
    "verify-credentials": _cmd_verify,
    "status": _cmd_status,
    "consumption": _cmd_consumption,
    "rotation-monitor": _cmd_rotation_monitor,
    "rekey": _cmd_rekey,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, quiet=args.quiet)

    try:
        settings = Settings.from_env(data_root=args.data_root)
        ctx = SyncContext.from_settings(settings)
        return COMMANDS[args.command](ctx, args)
    except (ValidationError, ConfigError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except PosSyncError as e:
        logger.error("%s failed: %s", args.command, e, exc_info=args.verbose)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
