"""Append-only credit ledger."""
from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import List, Optional
from uuid import uuid4

from observability.logger import log_event

from .clock import Clock, as_utc, utcnow
from .errors import InsufficientCredits
from .interfaces import LedgerRepository
from .types import CreditSummary, LedgerEntry, Page, TransactionType

LOCK_STRIPES = 64
RECENT_TRANSACTIONS = 10


def _check_sign(transaction_type: TransactionType, credits: int) -> None:
    if credits == 0:
        raise ValueError("ledger entries must move a non-zero amount of credits")
    if transaction_type == "consumption" and credits > 0:
        raise ValueError("consumption entries must carry a negative credit delta")
    if transaction_type != "consumption" and credits < 0:
        raise ValueError(f"{transaction_type} entries must carry a positive credit delta")


class CreditLedger:
    """Per-user credit balance derived from immutable ledger entries."""

    def __init__(self, store: LedgerRepository, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or utcnow
        self._locks: List[Lock] = [Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, user_id: str) -> Lock:  # Same user, same stripe
        return self._locks[hash(user_id) % LOCK_STRIPES]

    def available_credits(self, user_id: str) -> int:
        """Sum of non-expired credits, floored at zero."""

        return max(0, self._store.available_sum(user_id, self._clock()))

    def add_entry(
        self,
        user_id: str,
        transaction_type: TransactionType,
        credits: int,
        description: str,
        source_ref: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        *,
        interview_session_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Append an entry; ``balance_after`` snapshots the balance it produces.

        The store computes the snapshot inside its write transaction, so
        appends from other processes are counted too.
        """

        _check_sign(transaction_type, credits)
        with self._lock_for(user_id):
            now = self._clock()
            entry = LedgerEntry(
                id=uuid4().hex,
                user_id=user_id,
                transaction_type=transaction_type,
                credits=credits,
                balance_after=0,
                description=description,
                source_ref=source_ref,
                interview_session_id=interview_session_id,
                expires_at=expires_at,
                created_at=now,
            )
            stored = self._store.append(entry, now)
        log_event(
            "credits_appended",
            interview_session_id or "-",
            user_id=user_id,
            action=transaction_type,
            credits=credits,
            balance=stored.balance_after,
        )
        return stored

    def add_credits(
        self,
        user_id: str,
        credits: int,
        *,
        bonus: bool = False,
        expires_at: Optional[datetime] = None,
        source_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """Record a top-up purchase or a bonus grant."""

        transaction_type: TransactionType = "bonus" if bonus else "purchase"
        text = description or ("Bonus credits" if bonus else "Credit top-up purchase")
        return self.add_entry(user_id, transaction_type, credits, text, source_ref, expires_at)

    def consume(
        self, user_id: str, credits: int, interview_session_id: str, description: str
    ) -> Optional[LedgerEntry]:
        """Debit ``credits`` for an interview, raising ``InsufficientCredits`` if uncovered.

        The balance check and the append run under a per-user lock and inside a
        single storage transaction, so two concurrent debits can never both
        pass against the same balance. A zero-cost interview appends nothing
        and returns ``None``.
        """

        if credits < 0:
            raise ValueError("credits to consume must not be negative")
        if credits == 0:
            return None
        with self._lock_for(user_id):
            now = self._clock()
            draft = LedgerEntry(
                id=uuid4().hex,
                user_id=user_id,
                transaction_type="consumption",
                credits=-credits,
                balance_after=0,
                description=description,
                interview_session_id=interview_session_id,
                created_at=now,
            )
            stored = self._store.append_debit(draft, now)
            if stored is None:
                available = self.available_credits(user_id)
                log_event(
                    "credits_rejected",
                    interview_session_id,
                    user_id=user_id,
                    credits=credits,
                    balance=available,
                )
                raise InsufficientCredits(
                    "not enough credits available",
                    required=credits,
                    available=available,
                )
        log_event(
            "credits_appended",
            interview_session_id,
            user_id=user_id,
            action="consumption",
            credits=-credits,
            balance=stored.balance_after,
        )
        return stored

    def refund(self, debit: LedgerEntry, description: str) -> LedgerEntry:
        """Reverse a consumption entry with a new refund entry."""

        if debit.transaction_type != "consumption":
            raise ValueError("only consumption entries can be refunded")
        return self.add_entry(
            debit.user_id,
            "refund",
            -debit.credits,
            description,
            source_ref=debit.id,
            interview_session_id=debit.interview_session_id,
        )

    def find(self, entry_id: str) -> Optional[LedgerEntry]:
        return self._store.get(entry_id)

    def history(self, user_id: str, page: int = 1, page_size: int = 10) -> Page[LedgerEntry]:
        """Entries newest first, paginated."""

        return Page[LedgerEntry].build(self._store.entries(user_id), page, page_size)

    def summary(self, user_id: str, recent: int = RECENT_TRANSACTIONS) -> CreditSummary:
        """Balance, the earliest upcoming expiry and the newest ``recent`` entries."""

        now = as_utc(self._clock())
        entries = self._store.entries(user_id)
        upcoming = [as_utc(e.expires_at) for e in entries if e.expires_at is not None and as_utc(e.expires_at) > now]
        return CreditSummary(
            available=max(0, self._store.available_sum(user_id, now)),
            next_expiration=min(upcoming) if upcoming else None,
            recent_transactions=entries[:recent],
        )


__all__ = ["CreditLedger"]
