"""
Credit accounting for generation requests.

check_and_reserve holds credit for an in-flight attempt so that concurrent
requests from the same account cannot jointly overdraw it. deduct consumes the
hold and writes a usage entry keyed by reference_id; repeating a deduct with
the same reference_id never charges twice. Free models (cost 0) bypass the
ledger entirely.
"""

from dataclasses import dataclass

from dispatch.errors import AccountNotFoundError
from dispatch.repositories import LedgerRepository
from dispatch.routing_types import CreditAccount, LedgerEntry, LedgerEntryKind, LedgerWriteStatus
from utils.logger import get_logger

logger = get_logger(__name__)

GRANT_KINDS = {
    LedgerEntryKind.PURCHASE,
    LedgerEntryKind.BONUS,
    LedgerEntryKind.REFUND,
    LedgerEntryKind.ADJUSTMENT,
    LedgerEntryKind.SUBSCRIPTION_CREDIT,
}


@dataclass(frozen=True)
class Reserved:
    account_id: str
    amount: int


@dataclass(frozen=True)
class InsufficientCredits:
    account_id: str
    required: int
    available: int


@dataclass(frozen=True)
class Deducted:
    account_id: str
    amount: int
    balance_after: int | None
    entry: LedgerEntry | None = None
    duplicate: bool = False


class CreditLedger:
    def __init__(self, repository: LedgerRepository):
        self._repository = repository

    def check_and_reserve(self, account_id: str, cost: int) -> Reserved | InsufficientCredits:
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        if cost == 0:
            return Reserved(account_id=account_id, amount=0)

        if self._repository.try_reserve(account_id, cost):
            return Reserved(account_id=account_id, amount=cost)

        account = self._repository.get_account(account_id)
        available = account.available if account else 0
        logger.info(
            "Credit reservation refused",
            extra={"extra_fields": {"account_id": account_id, "required": cost, "available": available}},
        )
        return InsufficientCredits(account_id=account_id, required=cost, available=available)

    def release(self, reservation: Reserved) -> None:
        if reservation.amount > 0:
            self._repository.release(reservation.account_id, reservation.amount)

    def deduct(
        self,
        account_id: str,
        cost: int,
        reason: str,
        reference_id: str,
        reservation: Reserved | None = None,
        description: str | None = None,
    ) -> Deducted | InsufficientCredits:
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        held = reservation.amount if reservation else 0
        if cost == 0:
            if held:
                self._repository.release(account_id, held)
            return Deducted(account_id=account_id, amount=0, balance_after=None)

        write = self._repository.apply_debit(
            account_id,
            cost,
            held=held,
            reference_id=reference_id,
            reason=reason,
            description=description,
        )

        if write.status == LedgerWriteStatus.APPLIED:
            logger.info(
                "Credits deducted",
                extra={
                    "extra_fields": {
                        "account_id": account_id,
                        "amount": cost,
                        "reason": reason,
                        "reference_id": reference_id,
                        "balance_after": write.account.balance if write.account else None,
                    }
                },
            )
            return Deducted(
                account_id=account_id,
                amount=cost,
                balance_after=write.account.balance if write.account else None,
                entry=write.entry,
            )

        if write.status == LedgerWriteStatus.DUPLICATE:
            logger.info(
                "Duplicate deduction ignored",
                extra={"extra_fields": {"account_id": account_id, "reference_id": reference_id}},
            )
            return Deducted(
                account_id=account_id,
                amount=0,
                balance_after=write.account.balance if write.account else None,
                entry=write.entry,
                duplicate=True,
            )

        if held:
            self._repository.release(account_id, held)
        available = write.account.available if write.account else 0
        return InsufficientCredits(account_id=account_id, required=cost, available=available)

    def grant(
        self,
        account_id: str,
        amount: int,
        kind: LedgerEntryKind = LedgerEntryKind.PURCHASE,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> LedgerEntry:
        """
        Add (or, for adjustments, remove) credits.

        Idempotent per (kind, reference_id). Raises AccountNotFoundError for an
        unknown account and ValueError when the grant would overdraw.
        """
        kind = LedgerEntryKind(kind)
        if kind not in GRANT_KINDS:
            raise ValueError(f"{kind.value} entries are written by deduct, not grant")
        if amount == 0:
            raise ValueError("amount must be non-zero")
        if amount < 0 and kind != LedgerEntryKind.ADJUSTMENT:
            raise ValueError("only adjustment entries may be negative")
        if not reference_id:
            raise ValueError("reference_id is required")

        write = self._repository.apply_credit(
            account_id, amount, kind=kind, reference_id=reference_id, description=description
        )
        return self._grant_result(write, account_id, amount)

    def renew_monthly(self, account_id: str, reference_id: str) -> LedgerEntry:
        """Credit the monthly allowance and start a new usage period."""
        account = self._require_account(account_id)
        write = self._repository.apply_credit(
            account_id,
            account.monthly_allowance,
            kind=LedgerEntryKind.SUBSCRIPTION_CREDIT,
            reference_id=reference_id,
            description="Monthly allowance renewal",
            reset_usage=True,
        )
        return self._grant_result(write, account_id, account.monthly_allowance)

    def find_usage(self, account_id: str, reference_id: str) -> LedgerEntry | None:
        """Usage entry already written for reference_id, if any."""
        return self._repository.get_entry(account_id, LedgerEntryKind.USAGE, reference_id)

    def balance(self, account_id: str) -> CreditAccount:
        return self._require_account(account_id)

    def history(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        self._require_account(account_id)
        return self._repository.list_entries(account_id, limit=limit)

    def _require_account(self, account_id: str) -> CreditAccount:
        account = self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def _grant_result(self, write, account_id: str, amount: int) -> LedgerEntry:
        if write.status == LedgerWriteStatus.NO_ACCOUNT:
            raise AccountNotFoundError(account_id)
        if write.status == LedgerWriteStatus.INSUFFICIENT:
            raise ValueError(f"Adjustment of {amount} would make the balance negative")
        logger.info(
            "Credits granted" if write.status == LedgerWriteStatus.APPLIED else "Duplicate grant ignored",
            extra={
                "extra_fields": {
                    "account_id": account_id,
                    "amount": amount,
                    "kind": write.entry.kind.value if write.entry else None,
                    "reference_id": write.entry.reference_id if write.entry else None,
                }
            },
        )
        return write.entry
