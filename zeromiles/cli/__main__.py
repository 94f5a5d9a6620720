"""
ZeroMiles CLI - operator views of loan settlement state.

Usage:
    zeromiles show REQUEST_ID [--json]
    zeromiles claim-status REQUEST_ID [--json]
    zeromiles list [--status S] [--limit N] [--json]
    zeromiles history REQUEST_ID [--json]
    zeromiles stale [--max-age-minutes M] [--json]
    zeromiles check-tx CHAIN TX_HASH --amount A --recipient ADDR [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from zeromiles.config import LoanConfig
from zeromiles.errors import LoanServiceError, VerificationTransientError
from zeromiles.facade import LoanRequestAPI
from zeromiles.storage import SQLiteRequestStore
from zeromiles.types import Amount, RequestStatus
from zeromiles.verifier import VerificationQuery, build_verifier

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "pending": "○",
    "claimed": "◐",
    "completed": "✓",
    "failed": "✗",
}


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_show(args, api: LoanRequestAPI):
    """Show one loan request."""
    request = api.get_request(args.request_id)
    if args.json:
        _print_json(request.to_dict())
        return

    print(f"{STATUS_ICONS.get(request.status, '?')} {request.id} [{request.status}]")
    print(f"  Collateral: {request.collateral_amount} from {request.depositor}")
    print(f"  Requested:  {request.requested_amount} to {request.recipient_address}")
    print(f"  Chain:      {request.target_chain}")
    print(f"  Created:    {request.created_at.isoformat() if request.created_at else '-'}")
    if request.failure_reason:
        print(f"  Failure:    {request.failure_reason}")
    if request.refunded_at:
        print(f"  Refunded:   {request.refunded_at.isoformat()}")


def cmd_claim_status(args, api: LoanRequestAPI):
    """Show the fulfillment claim of a request."""
    claim = api.get_claim_status(args.request_id)
    if args.json:
        _print_json(claim.to_dict())
        return

    print(f"Claim {claim.id} [{claim.claim_status}]")
    print(f"  Solver:   {claim.solver_identity}")
    print(f"  Tx:       {claim.foreign_tx_reference}")
    print(f"  Claimed:  {claim.claimed_at.isoformat() if claim.claimed_at else '-'}")
    print(f"  Attempts: {claim.verification_attempts}")
    if claim.last_error:
        print(f"  Last error: {claim.last_error}")


def cmd_list(args, api: LoanRequestAPI):
    """List loan requests."""
    status = RequestStatus(args.status) if args.status else None
    requests = api.list_requests(status=status, limit=args.limit)
    if args.json:
        _print_json([r.to_dict() for r in requests])
        return

    if not requests:
        print("No loan requests.")
        return
    for request in requests:
        print(
            f"{STATUS_ICONS.get(request.status, '?')} {request.id}  "
            f"{request.collateral_amount} -> {request.requested_amount}  "
            f"[{request.status}]"
        )


def cmd_history(args, api: LoanRequestAPI):
    """Show the state transitions of a request."""
    transitions = api.get_history(args.request_id)
    if args.json:
        _print_json([t.to_dict() for t in transitions])
        return

    for t in transitions:
        when = t.created_at.isoformat() if t.created_at else "-"
        reason = f" ({t.reason})" if t.reason else ""
        print(f"{when}  {t.from_status or '-'} -> {t.to_status}  by {t.actor}{reason}")


def cmd_stale(args, api: LoanRequestAPI, config: LoanConfig):
    """List claims unresolved for too long."""
    max_age = (
        timedelta(minutes=args.max_age_minutes)
        if args.max_age_minutes is not None
        else config.max_claim_age
    )
    stale = api.stale_claims(max_age)
    if args.json:
        _print_json([s.to_dict() for s in stale])
        return

    if not stale:
        print(f"No claims older than {max_age}.")
        return
    print(f"⚠ {len(stale)} claim(s) unresolved for more than {max_age}:")
    for s in stale:
        print(
            f"  {s.request.id}  {s.claim.foreign_tx_reference} by {s.claim.solver_identity}  "
            f"age {s.age}  attempts {s.claim.verification_attempts}"
        )


def cmd_check_tx(args, config: LoanConfig):
    """Query a foreign chain once for a payout."""
    chain = config.get_chain(args.chain)
    query = VerificationQuery(
        tx_reference=args.tx_hash,
        expected_amount=Amount(args.amount, config.target_denom),
        recipient_address=args.recipient,
        token_denom=chain.usdc_denom,
        chain=chain.name,
    )
    verifier = build_verifier(config)
    try:
        result = asyncio.run(verifier.verify(query))
    except VerificationTransientError as e:
        print(f"⚠ Could not query {chain.name}: {e}")
        sys.exit(2)

    if args.json:
        _print_json(result.to_dict())
        return
    print(f"{result.status.value}: {result.tx_reference} on {result.chain}")
    if result.error:
        print(f"  {result.error_code}: {result.error}")
    if result.amount is not None:
        print(f"  Credited {result.amount} to {result.recipient_address}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zeromiles",
        description="Cross-chain collateralized loan settlement",
    )
    parser.add_argument("--db", type=Path, default=None, help="Path to the SQLite request store")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_show = subparsers.add_parser("show", help="Show a loan request")
    p_show.add_argument("request_id")
    p_show.add_argument("--json", "-j", action="store_true")

    p_claim = subparsers.add_parser("claim-status", help="Show a request's fulfillment claim")
    p_claim.add_argument("request_id")
    p_claim.add_argument("--json", "-j", action="store_true")

    p_list = subparsers.add_parser("list", help="List loan requests")
    p_list.add_argument("--status", "-s", choices=[s.value for s in RequestStatus])
    p_list.add_argument("--limit", "-l", type=int, default=50)
    p_list.add_argument("--json", "-j", action="store_true")

    p_history = subparsers.add_parser("history", help="Show a request's state transitions")
    p_history.add_argument("request_id")
    p_history.add_argument("--json", "-j", action="store_true")

    p_stale = subparsers.add_parser("stale", help="List claims unresolved for too long")
    p_stale.add_argument("--max-age-minutes", type=float, default=None)
    p_stale.add_argument("--json", "-j", action="store_true")

    p_check = subparsers.add_parser("check-tx", help="Verify a payout transaction once")
    p_check.add_argument("chain", help="Chain name (e.g. osmosis, base)")
    p_check.add_argument("tx_hash")
    p_check.add_argument("--amount", required=True, help="Expected USDC amount (e.g. 1000)")
    p_check.add_argument("--recipient", required=True, help="Expected recipient address")
    p_check.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("zeromiles").setLevel(logging.DEBUG)

    config = LoanConfig.from_env()

    try:
        if args.command == "check-tx":
            cmd_check_tx(args, config)
            return

        api = LoanRequestAPI(SQLiteRequestStore(db_path=args.db))
        if args.command == "show":
            cmd_show(args, api)
        elif args.command == "claim-status":
            cmd_claim_status(args, api)
        elif args.command == "list":
            cmd_list(args, api)
        elif args.command == "history":
            cmd_history(args, api)
        elif args.command == "stale":
            cmd_stale(args, api, config)
    except LoanServiceError as e:
        print(f"✗ {e}")
        sys.exit(1)
    except (KeyError, ValueError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
