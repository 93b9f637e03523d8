"""Settlement Command Line Interface.

Provides operational tools for:
- Schema creation
- Wallet balance queries and ledger verification
- Reconciliation outbox review and resolution
- Manual settlement of a booking
- Configuration checks

Usage:
    python -m fare_settlement init-db
    python -m fare_settlement balance --user-id X
    python -m fare_settlement verify-wallet --user-id X
    python -m fare_settlement reconciliation-list
    python -m fare_settlement reconciliation-resolve --entry-id X --note "refunded manually"
    python -m fare_settlement settle --booking-id X --final-fare 450.00
    python -m fare_settlement check-config
"""

from __future__ import annotations

import argparse
import sys
from decimal import Decimal, InvalidOperation
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from fare_settlement.config import configure_logging, get_settings
from fare_settlement.database import create_schema, get_session, init_db
from fare_settlement.errors import SettlementError
from fare_settlement.settlement.config import SettlementConfig, validate_production_config
from fare_settlement.settlement.facade import FareSettlement, build_gateway
from fare_settlement.settlement.gateway import PaymentGateway


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_amount(s: str) -> Decimal:
    """Parse a decimal money amount."""
    try:
        return Decimal(s)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {s}") from None


class SettlementCli:
    """Settlement Command Line Interface."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        config: SettlementConfig | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory
        self._config = config
        self._gateway = gateway
        self._owns_gateway = False

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m fare_settlement",
            description="Fare settlement operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create settlement tables")

        balance = subparsers.add_parser("balance", help="Show a user's wallet balance")
        balance.add_argument("--user-id", type=parse_uuid, required=True, help="Wallet owner")
        balance.add_argument(
            "--transactions",
            type=int,
            default=0,
            help="Also list this many recent ledger lines",
        )

        verify = subparsers.add_parser(
            "verify-wallet",
            help="Check a wallet balance against its ledger",
        )
        verify.add_argument("--user-id", type=parse_uuid, required=True, help="Wallet owner")

        recon_list = subparsers.add_parser(
            "reconciliation-list",
            help="List open reconciliation entries",
        )
        recon_list.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum entries to list (default: 100)",
        )

        recon_resolve = subparsers.add_parser(
            "reconciliation-resolve",
            help="Mark a reconciliation entry resolved",
        )
        recon_resolve.add_argument("--entry-id", type=parse_uuid, required=True, help="Entry to resolve")
        recon_resolve.add_argument("--note", type=str, required=True, help="What was done to reconcile")

        settle = subparsers.add_parser("settle", help="Settle a completed booking")
        settle.add_argument("--booking-id", type=parse_uuid, required=True, help="Booking to settle")
        settle.add_argument("--final-fare", type=parse_amount, required=True, help="Final fare")

        subparsers.add_parser("check-config", help="Check configuration for production use")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "init-db": self._cmd_init_db,
            "balance": self._cmd_balance,
            "verify-wallet": self._cmd_verify_wallet,
            "reconciliation-list": self._cmd_reconciliation_list,
            "reconciliation-resolve": self._cmd_reconciliation_resolve,
            "settle": self._cmd_settle,
            "check-config": self._cmd_check_config,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except SettlementError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        finally:
            self._close_gateway()

    @property
    def config(self) -> SettlementConfig:
        if self._config is None:
            self._config = SettlementConfig.from_settings(get_settings())
        return self._config

    @property
    def gateway(self) -> PaymentGateway:
        """One adapter per run, closed when the command finishes."""
        if self._gateway is None:
            self._gateway = build_gateway(self.config.gateway)
            self._owns_gateway = True
        return self._gateway

    def _close_gateway(self) -> None:
        if self._owns_gateway and self._gateway is not None:
            self._gateway.close()
            self._gateway = None
            self._owns_gateway = False

    def _settlement(self, session: Session) -> FareSettlement:
        return FareSettlement(session, self.config, gateway=self.gateway)

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        if self._session_factory is not None:
            engine = self._session_factory.kw["bind"]
        else:
            engine, _ = init_db()
        create_schema(engine)
        print("Settlement schema created")
        return 0

    def _cmd_balance(self, args: argparse.Namespace) -> int:
        """Query wallet balance."""
        with get_session(self._session_factory) as session:
            settlement = self._settlement(session)
            balance = settlement.wallet_balance(args.user_id)
            print(f"Wallet for user: {args.user_id}")
            print(f"\n  Balance: {balance:>15,.2f}")

            if args.transactions:
                print("\n  Recent transactions:")
                for line in settlement.wallet_transactions(args.user_id, limit=args.transactions):
                    print(
                        f"    {line.created_at:%Y-%m-%d %H:%M}  {line.transaction_type:<18}"
                        f" {line.amount:>12,.2f}  -> {line.balance_after:,.2f}"
                    )
        return 0

    def _cmd_verify_wallet(self, args: argparse.Namespace) -> int:
        """Verify a wallet balance against its ledger."""
        with get_session(self._session_factory) as session:
            consistent = self._settlement(session).verify_wallet(args.user_id)
        if consistent:
            print(f"Wallet {args.user_id}: OK")
            return 0
        print(f"Wallet {args.user_id}: MISMATCH")
        return 1

    def _cmd_reconciliation_list(self, args: argparse.Namespace) -> int:
        """List open reconciliation entries."""
        with get_session(self._session_factory) as session:
            entries = self._settlement(session).open_reconciliation_entries(limit=args.limit)
            if not entries:
                print("No open reconciliation entries")
                return 0

            print(f"{len(entries)} open reconciliation entries:")
            for entry in entries:
                amount = f"{entry.amount:,.2f}" if entry.amount is not None else "-"
                print(
                    f"  {entry.reconciliation_entry_id}  {entry.kind:<10} booking={entry.booking_id}"
                    f" payment={entry.gateway_payment_id or '-'} amount={amount}"
                )
                print(f"      {entry.error}")
        return 0

    def _cmd_reconciliation_resolve(self, args: argparse.Namespace) -> int:
        """Resolve a reconciliation entry."""
        with get_session(self._session_factory) as session:
            self._settlement(session).resolve_reconciliation_entry(args.entry_id, args.note)
        print(f"Resolved {args.entry_id}")
        return 0

    def _cmd_settle(self, args: argparse.Namespace) -> int:
        """Settle a booking."""
        with get_session(self._session_factory) as session:
            outcome = self._settlement(session).settle_payment(
                booking_id=args.booking_id,
                final_fare=args.final_fare,
            )

        result = outcome.settlement_result
        earnings = outcome.earnings_result
        print(f"Booking {outcome.booking_id}: {outcome.settlement_status}")
        print(f"  Method:            {result.payment_method}")
        if result.captured_amount is not None:
            print(f"  Captured:          {result.captured_amount:>12,.2f}")
        if result.additional_payment_needed:
            print(
                f"  Additional:        {result.additional_amount:>12,.2f}"
                f" via {result.additional_payment_method}"
            )
        print(f"  Provider earnings: {earnings.provider_earnings:>12,.2f}")
        return 0

    def _cmd_check_config(self, args: argparse.Namespace) -> int:
        """Check configuration for production."""
        issues = validate_production_config(self.config)
        if not issues:
            print("Configuration OK")
            return 0
        for issue in issues:
            print(f"  - {issue}")
        return 1 if any(issue.startswith("CRITICAL") for issue in issues) else 0


def main() -> int:
    """CLI entry point."""
    configure_logging()
    cli = SettlementCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
