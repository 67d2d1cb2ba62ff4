"""Currency ledger: balances plus an append-only, idempotent entry log."""

from __future__ import annotations

import logging

from branchline.application.transactions import KeyedLocks, run_transaction
from branchline.core.retry import RetryPolicy
from branchline.domain.errors import (
    DuplicateIdempotencyKeyConflict,
    InsufficientFunds,
    InvalidAmount,
)
from branchline.domain.models import LedgerEntry
from branchline.domain.ports import ReaderStore, ReaderTransaction

DEFAULT_STARTING_BALANCE = 20

logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}.")


class CurrencyLedger:
    """Per-user balances with atomic, idempotent debits and credits.

    Standalone calls (``credit``/``debit``) open their own transaction. The
    ``*_within`` forms join a caller's transaction so a purchase commits with
    the navigation step it pays for.
    """

    def __init__(
        self,
        store: ReaderStore,
        *,
        starting_balance: int = DEFAULT_STARTING_BALANCE,
        retry_policy: RetryPolicy | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        if starting_balance < 0:
            raise ValueError("starting_balance must not be negative.")
        self._store = store
        self._starting_balance = starting_balance
        self._retry_policy = retry_policy or RetryPolicy()
        self._locks = locks or KeyedLocks()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get_balance(self, user_id: str) -> int:
        balance = self._store.get_balance(user_id=user_id)
        if balance is not None:
            return balance
        with self._locks.hold(("ledger", user_id)):
            return run_transaction(
                self._store,
                lambda transaction: self.ensure_account_within(transaction, user_id=user_id),
                policy=self._retry_policy,
                label="ledger.open_account",
            )

    def peek_balance(self, user_id: str) -> int:
        """Balance without opening an account; unopened accounts report the grant."""
        balance = self._store.get_balance(user_id=user_id)
        return self._starting_balance if balance is None else balance

    def credit(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> LedgerEntry:
        _check_amount(amount)
        with self._locks.hold(("ledger", user_id)):
            entry = run_transaction(
                self._store,
                lambda transaction: self.credit_within(
                    transaction,
                    user_id=user_id,
                    amount=amount,
                    reason=reason,
                    idempotency_key=idempotency_key,
                ),
                policy=self._retry_policy,
                label="ledger.credit",
            )
        logger.info(
            "ledger.credit user_id=%s amount=%s balance_after=%s key=%s",
            user_id,
            amount,
            entry.balance_after,
            idempotency_key,
        )
        return entry

    def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        related_choice_id: str | None,
        idempotency_key: str,
    ) -> LedgerEntry:
        _check_amount(amount)
        with self._locks.hold(("ledger", user_id)):
            entry = run_transaction(
                self._store,
                lambda transaction: self.debit_within(
                    transaction,
                    user_id=user_id,
                    amount=amount,
                    reason=reason,
                    related_choice_id=related_choice_id,
                    idempotency_key=idempotency_key,
                ),
                policy=self._retry_policy,
                label="ledger.debit",
            )
        return entry

    def history(self, user_id: str, *, limit: int = 100) -> list[LedgerEntry]:
        return self._store.list_entries(user_id=user_id, limit=limit)

    def ensure_account_within(self, transaction: ReaderTransaction, *, user_id: str) -> int:
        balance = transaction.get_balance(user_id=user_id)
        if balance is not None:
            return balance
        opening = transaction.open_account(
            user_id=user_id, opening_balance=self._starting_balance
        )
        if opening is not None:
            logger.info(
                "ledger.account_opened user_id=%s balance=%s", user_id, opening.balance_after
            )
        balance = transaction.get_balance(user_id=user_id)
        assert balance is not None
        return balance

    def credit_within(
        self,
        transaction: ReaderTransaction,
        *,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        _check_amount(amount)
        prior = self._replayed_entry(
            transaction,
            idempotency_key=idempotency_key,
            user_id=user_id,
            delta=amount,
            reason=reason,
            related_choice_id=None,
        )
        if prior is not None:
            return prior
        self.ensure_account_within(transaction, user_id=user_id)
        return transaction.append_entry(
            user_id=user_id,
            delta=amount,
            reason=reason,
            idempotency_key=idempotency_key,
            related_choice_id=None,
        )

    def debit_within(
        self,
        transaction: ReaderTransaction,
        *,
        user_id: str,
        amount: int,
        reason: str,
        related_choice_id: str | None,
        idempotency_key: str,
    ) -> LedgerEntry:
        """Check balance and append the debit inside ``transaction``.

        A replayed key returns the original entry without a balance check.
        """
        _check_amount(amount)
        prior = self._replayed_entry(
            transaction,
            idempotency_key=idempotency_key,
            user_id=user_id,
            delta=-amount,
            reason=reason,
            related_choice_id=related_choice_id,
        )
        if prior is not None:
            return prior
        balance = self.ensure_account_within(transaction, user_id=user_id)
        if balance < amount:
            logger.info(
                "ledger.insufficient_funds user_id=%s balance=%s required=%s",
                user_id,
                balance,
                amount,
            )
            raise InsufficientFunds(user_id=user_id, balance=balance, required=amount)
        entry = transaction.append_entry(
            user_id=user_id,
            delta=-amount,
            reason=reason,
            idempotency_key=idempotency_key,
            related_choice_id=related_choice_id,
        )
        logger.info(
            "ledger.debit user_id=%s amount=%s balance_after=%s choice_id=%s key=%s",
            user_id,
            amount,
            entry.balance_after,
            related_choice_id,
            idempotency_key,
        )
        return entry

    def _replayed_entry(
        self,
        transaction: ReaderTransaction,
        *,
        idempotency_key: str,
        user_id: str,
        delta: int,
        reason: str,
        related_choice_id: str | None,
    ) -> LedgerEntry | None:
        prior = transaction.find_entry(user_id=user_id, idempotency_key=idempotency_key)
        if prior is None:
            return None
        mismatches = [
            name
            for name, stored, requested in (
                ("delta", prior.delta, delta),
                ("reason", prior.reason, reason),
                ("related_choice_id", prior.related_choice_id, related_choice_id),
            )
            if stored != requested
        ]
        if mismatches:
            logger.error(
                "ledger.idempotency_conflict key=%s user_id=%s fields=%s",
                idempotency_key,
                user_id,
                ",".join(mismatches),
            )
            raise DuplicateIdempotencyKeyConflict(
                idempotency_key=idempotency_key,
                detail="different " + ", ".join(mismatches),
            )
        logger.info("ledger.replay key=%s entry_id=%s", idempotency_key, prior.entry_id)
        return prior
