# lensroom/ledger.py

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lensroom.entities import Credits, CreditTransaction
from lensroom.errors import AlreadyRefundedError, InsufficientCreditsError, ValidationError

logger = logging.getLogger("lensroom_infer")


class LedgerClient:
    """
    Prepaid credit balance + append-only transaction log.

    Every balance mutation goes through adjust(): the credits row is locked
    (SELECT ... FOR UPDATE), the balance moves through a single guarded
    UPDATE (amount + delta >= 0), and that update and the transaction row are
    committed together. A rejected debit leaves
    neither a balance change nor a transaction behind.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    # -----------------------
    # Reads
    # -----------------------

    def get_balance(self, identity: str) -> int:
        for attempt in range(2):
            session = self.session_factory()
            try:
                row = session.execute(
                    select(Credits).where(Credits.user_id == str(identity))
                ).scalar_one_or_none()
                if row is not None:
                    return int(row.amount)
                # first use: materialize at 0
                session.add(Credits(user_id=str(identity), amount=0))
                session.commit()
                return 0
            except IntegrityError:
                # concurrent first use inserted the row before us
                session.rollback()
                if attempt:
                    raise
            finally:
                session.close()
        return 0

    def list_transactions(self, identity: str, generation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        session = self.session_factory()
        try:
            stmt = select(CreditTransaction).where(CreditTransaction.user_id == str(identity))
            if generation_id is not None:
                stmt = stmt.where(CreditTransaction.generation_id == str(generation_id))
            stmt = stmt.order_by(CreditTransaction.created_at.asc())
            return [
                {
                    "id": tx.id,
                    "user_id": tx.user_id,
                    "amount": tx.amount,
                    "type": tx.type,
                    "description": tx.description,
                    "metadata": dict(tx.metadata_json or {}),
                    "generation_id": tx.generation_id,
                    "created_at": tx.created_at,
                }
                for tx in session.execute(stmt).scalars().all()
            ]
        finally:
            session.close()

    # -----------------------
    # Writes
    # -----------------------

    def adjust(
        self,
        identity: str,
        amount: int,
        type: str,
        description: Optional[str] = None,
        generation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Apply a signed amount and log it. Returns the new balance.
        Raises InsufficientCreditsError (no mutation) when a debit would go negative.
        """
        return self._run_locked(
            identity,
            lambda session, credits: self._apply(
                session, credits, amount, type, description, generation_id, metadata
            ),
        )

    def top_up(self, identity: str, amount: int, description: Optional[str] = None) -> int:
        if int(amount) <= 0:
            raise ValidationError("Top-up amount must be a positive integer")
        return self.adjust(identity, int(amount), "topup", description or f"Top-up: {amount} credits")

    def refund_generation(self, generation_id: str, records) -> int:
        """
        Manually-triggered refund of the credits charged for one generation.
        Refunds at most once per generation; returns the owner's new balance.
        """
        generation = records.get(generation_id)
        if generation is None:
            raise ValidationError(f"Generation not found: {generation_id}")
        if generation.credits_used <= 0:
            raise ValidationError(f"Generation {generation_id} was not charged")

        def _refund(session: Session, credits: Credits) -> int:
            existing = session.execute(
                select(CreditTransaction.id).where(
                    CreditTransaction.generation_id == str(generation_id),
                    CreditTransaction.type == "refund",
                )
            ).first()
            if existing is not None:
                raise AlreadyRefundedError(f"Generation {generation_id} was already refunded")
            return self._apply(
                session,
                credits,
                generation.credits_used,
                "refund",
                f"Refund for generation {generation_id}",
                generation_id,
                {"status_at_refund": generation.status},
            )

        return self._run_locked(generation.user_id, _refund)

    # -----------------------
    # Internals
    # -----------------------

    def _run_locked(self, identity: str, fn: Callable[[Session, Credits], int]) -> int:
        for attempt in range(2):
            session = self.session_factory()
            try:
                credits = self._lock_credits_row(session, str(identity))
                new_balance = fn(session, credits)
                session.commit()
                return new_balance
            except IntegrityError:
                # lost the first-use insert race; the row exists now, lock it on retry
                session.rollback()
                if attempt:
                    raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        raise RuntimeError("unreachable")

    def _lock_credits_row(self, session: Session, identity: str) -> Credits:
        credits = session.execute(
            select(Credits).where(Credits.user_id == identity).with_for_update()
        ).scalar_one_or_none()
        if credits is None:
            credits = Credits(user_id=identity, amount=0)
            session.add(credits)
            session.flush()
        return credits

    def _apply(
        self,
        session: Session,
        credits: Credits,
        amount: int,
        type: str,
        description: Optional[str],
        generation_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> int:
        amount = int(amount)
        if amount == 0:
            raise ValidationError("Credit adjustment amount must be non-zero")

        # non-negativity is checked by the UPDATE itself against the stored value, which
        # also holds where FOR UPDATE is a no-op (SQLite)
        result = session.execute(
            update(Credits)
            .where(Credits.id == credits.id, Credits.amount + amount >= 0)
            .values(amount=Credits.amount + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            stored = session.execute(select(Credits.amount).where(Credits.id == credits.id)).scalar_one()
            raise InsufficientCreditsError(balance=int(stored), required=abs(amount))
        new_balance = int(session.execute(select(Credits.amount).where(Credits.id == credits.id)).scalar_one())

        session.add(
            CreditTransaction(
                user_id=credits.user_id,
                amount=amount,
                type=type,
                description=description,
                metadata_json=dict(metadata or {}),
                generation_id=str(generation_id) if generation_id else None,
            )
        )
        logger.debug("[Ledger] %s %+d for %s -> %d", type, amount, credits.user_id, new_balance)
        return new_balance
