#!/usr/bin/env python3
# Juice CLI v1.0.0
# argparse. Operator tooling for the ledger: run the processors, inspect
# balances, refund exhausted rows, resolve disputes.

import argparse
import json
import sys
import time

from cashouts import get_cashout_pipeline
from db import get_database
from disputes import get_dispute_log
from errors import LedgerError
from events import entity_history, verify_chain
from ledger import get_ledger
from runner import RUNNER_INTERVAL_SEC, get_runner, setup_logging
from settlement import get_settlement_pipeline
from spends import get_spend_pipeline

PIPELINES = {
    "spend": get_spend_pipeline,
    "cashout": get_cashout_pipeline,
    "fiat": get_settlement_pipeline,
}


def cmd_run(args):
    """Run every processor once (or just --job)."""
    results = get_runner().trigger(args.job)
    for name, r in results.items():
        print(f"{name:>24} | claimed {r.claimed} | ok {r.succeeded} | "
              f"failed {r.failed} | skipped {r.skipped}")
        for err in r.errors:
            print(f"{'':>24} ! {err}")


def cmd_loop(args):
    """Run the processors on a timer until interrupted."""
    runner = get_runner()
    print(f"Starting processor runner {runner.runner_id} (interval: {args.interval}s)...")
    runner.start(interval=args.interval)
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        runner.stop()
        print("\nProcessor runner stopped.")


def cmd_balance(args):
    snap = get_ledger().snapshot(args.user_id)
    print(f"User:              {snap.user_id}")
    print(f"Balance:           ${snap.balance}")
    print(f"Lifetime purchased ${snap.lifetime_purchased}")
    print(f"Lifetime spent     ${snap.lifetime_spent}")
    print(f"Lifetime cashed out ${snap.lifetime_cashed_out}")


def cmd_history(args):
    txs = get_ledger().get_transactions(args.user_id, limit=args.limit, offset=args.offset)
    if not txs:
        print("No transactions.")
        return
    for t in txs:
        when = time.strftime("%Y-%m-%d %H:%M", time.localtime(t["created_at"]))
        print(f"  {when} | {t['type']:>8} | {t['amount']:>10} | {t['status']:>10} | {t['id']}")


def cmd_exhausted(args):
    """Rows that used up their retries and need an operator."""
    found = False
    for kind, getter in PIPELINES.items():
        pipeline = getter()
        for state, rows in (("failed", pipeline.list_exhausted()),
                            ("stalled", pipeline.list_stalled())):
            for row in rows:
                found = True
                print(f"  {kind:>7} | {state:>7} | {row['id']} | retries {row['retry_count']} | "
                      f"{row['error_message']}")
    if not found:
        print("Nothing exhausted.")


def cmd_refund_spend(args):
    row = get_spend_pipeline().refund(args.spend_id)
    print(f"Spend {row['id']} refunded (${row['juice_amount_cents'] / 100:.2f} credited back)")


def cmd_refund_cashout(args):
    row = get_cashout_pipeline().refund(args.cash_out_id)
    print(f"Cash out {row['id']} refunded (${row['juice_amount_cents'] / 100:.2f} credited back)")


def cmd_retry(args):
    row = PIPELINES[args.kind]().retry_now(args.row_id)
    print(f"{row['id']} retried, now {row['status']}")


def cmd_disputes(args):
    disputes = get_dispute_log().list(unresolved_only=args.unresolved)
    if not disputes:
        print("No disputes.")
        return
    for d in disputes:
        resolution = d["resolution"] or "open"
        print(f"  {d['id']} | {d['target_kind']:>12} {d['target_id']} | "
              f"{d['reason_code'] or '-'} | {resolution}")


def cmd_resolve_dispute(args):
    d = get_dispute_log().resolve(args.dispute_id, args.resolution)
    print(f"Dispute {d['id']} resolved: {d['resolution']}")


def cmd_audit(args):
    """Print an entity's event history and check its hash chain."""
    with get_database().connection() as tx:
        events = entity_history(tx, args.entity_type, args.entity_id)
        check = verify_chain(tx, args.entity_type, args.entity_id)
    for e in events:
        print(f"  #{e.seq} {e.event_type} | {e.actor} | {json.dumps(e.data, sort_keys=True)}")
    print(f"Chain valid: {check['valid']} ({check['events_checked']} events)")


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Juice API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="juice",
        description="Juice: stored-value ledger and settlement engine",
    )
    sub = parser.add_subparsers(dest="command")

    # juice run
    p_run = sub.add_parser("run", help="Run the processors once")
    p_run.add_argument("--job", default=None, help="Run only this job")
    p_run.set_defaults(func=cmd_run)

    # juice loop
    p_loop = sub.add_parser("loop", help="Run the processors on a timer")
    p_loop.add_argument("--interval", type=int, default=RUNNER_INTERVAL_SEC,
                        help=f"Seconds between runs (default {RUNNER_INTERVAL_SEC})")
    p_loop.set_defaults(func=cmd_loop)

    # juice balance <user>
    p_bal = sub.add_parser("balance", help="Show a user's balance")
    p_bal.add_argument("user_id", help="User ID")
    p_bal.set_defaults(func=cmd_balance)

    # juice history <user>
    p_hist = sub.add_parser("history", help="Show a user's transactions")
    p_hist.add_argument("user_id", help="User ID")
    p_hist.add_argument("--limit", type=int, default=50)
    p_hist.add_argument("--offset", type=int, default=0)
    p_hist.set_defaults(func=cmd_history)

    # juice exhausted
    p_exh = sub.add_parser("exhausted", help="List rows with exhausted retries")
    p_exh.set_defaults(func=cmd_exhausted)

    # juice refund-spend <id>
    p_rs = sub.add_parser("refund-spend", help="Refund a failed spend")
    p_rs.add_argument("spend_id", help="Spend ID")
    p_rs.set_defaults(func=cmd_refund_spend)

    # juice refund-cashout <id>
    p_rc = sub.add_parser("refund-cashout", help="Refund a failed cash out")
    p_rc.add_argument("cash_out_id", help="Cash out ID")
    p_rc.set_defaults(func=cmd_refund_cashout)

    # juice retry <kind> <id>
    p_retry = sub.add_parser("retry", help="Retry one failed row now")
    p_retry.add_argument("kind", choices=list(PIPELINES.keys()))
    p_retry.add_argument("row_id", help="Row ID")
    p_retry.set_defaults(func=cmd_retry)

    # juice disputes
    p_disp = sub.add_parser("disputes", help="List disputes")
    p_disp.add_argument("--unresolved", action="store_true", help="Open disputes only")
    p_disp.set_defaults(func=cmd_disputes)

    # juice resolve-dispute <id> <resolution>
    p_res = sub.add_parser("resolve-dispute", help="Record a dispute outcome")
    p_res.add_argument("dispute_id", help="Dispute ID")
    p_res.add_argument("resolution", choices=["won", "lost", "withdrawn"])
    p_res.set_defaults(func=cmd_resolve_dispute)

    # juice audit <entity_type> <id>
    p_audit = sub.add_parser("audit", help="Show and verify an entity's event chain")
    p_audit.add_argument("entity_type",
                         choices=["purchase", "spend", "cash_out", "fiat_payment", "dispute"])
    p_audit.add_argument("entity_id", help="Entity ID")
    p_audit.set_defaults(func=cmd_audit)

    # juice serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--bind", default="0.0.0.0")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging()
    try:
        args.func(args)
    except LedgerError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
