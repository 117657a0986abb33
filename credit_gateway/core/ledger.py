"""
Credit ledger.

Append-only record of credit transactions per officer, plus the
materialized balance on the officer row.

Balance invariant:
    credits_remaining == total_credits + sum(ledger deltas) - sum(held reservations)

Reservations are the only way credits leave a balance during a lookup.
The reserve step is a single conditional UPDATE guarded by the current
balance, so two concurrent reservations can never both pass a check the
combined amount would fail. Every reservation leaves the HELD state
exactly once: committed into a Deduction entry, released back to the
balance, or expired by the sweep.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from .credits import CreditLike, from_units, to_units
from .errors import InsufficientCredits, InternalInconsistency
from credit_gateway.storage.models import LedgerAction, LedgerEntry, Reservation, ReservationState
from credit_gateway.storage.repository import (
    GatewayRepository,
    LEDGER_COLUMNS,
    RESERVATION_COLUMNS,
    row_to_ledger_entry,
    row_to_reservation,
    timestamp,
)

logger = logging.getLogger(__name__)

CREDIT_ACTIONS = frozenset({LedgerAction.TOP_UP, LedgerAction.RENEWAL, LedgerAction.REFUND})


@dataclass(frozen=True)
class ReservationToken:
    """Handle on an uncommitted deduction."""
    token: str
    officer_id: str
    amount: Decimal
    created_at: datetime
    query_id: Optional[str] = None


@dataclass(frozen=True)
class BalanceCheck:
    """Result of reconciling an officer's balance against the ledger."""
    officer_id: str
    credits_remaining: Decimal
    total_credits: Decimal
    ledger_total: Decimal
    held: Decimal

    @property
    def expected(self) -> Decimal:
        return self.total_credits + self.ledger_total - self.held

    @property
    def consistent(self) -> bool:
        return self.credits_remaining == self.expected


class Ledger:
    """Credit ledger and reservation manager.

    The only component allowed to change an officer's balance.
    """

    def __init__(self, repository: GatewayRepository):
        self.repository = repository

    def reserve(
        self, officer_id: str, amount: CreditLike, query_id: Optional[str] = None
    ) -> ReservationToken:
        """Atomically check the balance and hold `amount` credits.

        Args:
            officer_id: Officer to reserve from
            amount: Credits to hold
            query_id: Query record the reservation is made for

        Returns:
            Token for the held reservation

        Raises:
            InsufficientCredits: If the balance does not cover the amount
            ValueError: If the officer does not exist or amount is invalid
        """
        units = to_units(amount)
        token = uuid.uuid4().hex
        created_at = datetime.now()

        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE officer
                SET credits_remaining_units = credits_remaining_units - ?
                WHERE id = ? AND credits_remaining_units >= ?
                """,
                (units, officer_id, units),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT credits_remaining_units FROM officer WHERE id = ?",
                    (officer_id,),
                ).fetchone()
                conn.rollback()
                if row is None:
                    raise ValueError(f"Unknown officer: {officer_id}")
                logger.info(
                    "Reservation refused for officer %s: required %s, available %s",
                    officer_id, from_units(units), from_units(row[0]),
                )
                raise InsufficientCredits(officer_id, from_units(units), from_units(row[0]))

            conn.execute(
                f"""
                INSERT INTO reservation ({RESERVATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, NULL)
                """,
                (token, officer_id, units, ReservationState.HELD.value,
                 query_id, timestamp(created_at)),
            )
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "Reserved %s credits for officer %s (reservation %s)",
            from_units(units), officer_id, token,
        )
        return ReservationToken(
            token=token,
            officer_id=officer_id,
            amount=from_units(units),
            created_at=created_at,
            query_id=query_id,
        )

    def commit(self, token: ReservationToken, query_id: str) -> Optional[LedgerEntry]:
        """Turn a held reservation into a permanent Deduction entry.

        Committing an already committed reservation is a no-op.

        Returns:
            The Deduction entry, or None when nothing was written

        Raises:
            InternalInconsistency: If the token is unknown or was released
        """
        now = timestamp()
        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            reservation = self._load(conn, token.token, "commit")
            if reservation.state == ReservationState.COMMITTED:
                conn.rollback()
                logger.warning("Reservation %s already committed; ignoring", token.token)
                return None
            if reservation.state != ReservationState.HELD:
                conn.rollback()
                self._fail(
                    f"Cannot commit reservation {token.token}: "
                    f"already {reservation.state.value.lower()}"
                )

            conn.execute(
                """
                UPDATE reservation SET state = ?, settled_at = ?, query_id = ?
                WHERE token = ? AND state = ?
                """,
                (ReservationState.COMMITTED.value, now, query_id,
                 token.token, ReservationState.HELD.value),
            )
            entry = None
            if reservation.amount > 0:
                cursor = conn.execute(
                    """
                    INSERT INTO ledger_entry
                    (officer_id, action, credits_delta_units, related_query_id, remarks, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (reservation.officer_id, LedgerAction.DEDUCTION.value,
                     -to_units(reservation.amount), query_id, "Query usage", now),
                )
                entry = self._entry(conn, cursor.lastrowid)
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "Committed reservation %s: %s credits charged to officer %s for query %s",
            token.token, reservation.amount, reservation.officer_id, query_id,
        )
        return entry

    def release(self, token: ReservationToken) -> bool:
        """Return a held reservation's credits to the balance.

        Releasing an already released or expired reservation is a no-op.

        Returns:
            True if credits were restored by this call

        Raises:
            InternalInconsistency: If the token is unknown or was committed
        """
        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            reservation = self._load(conn, token.token, "release")
            if reservation.state in (ReservationState.RELEASED, ReservationState.EXPIRED):
                conn.rollback()
                logger.warning(
                    "Reservation %s already %s; ignoring release",
                    token.token, reservation.state.value.lower(),
                )
                return False
            if reservation.state != ReservationState.HELD:
                conn.rollback()
                self._fail(f"Cannot release reservation {token.token}: already committed")

            self._restore(conn, reservation, ReservationState.RELEASED, timestamp())
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "Released reservation %s: %s credits returned to officer %s",
            token.token, reservation.amount, reservation.officer_id,
        )
        return True

    def credit(
        self,
        officer_id: str,
        amount: CreditLike,
        action: LedgerAction = LedgerAction.TOP_UP,
        remarks: Optional[str] = None,
        related_query_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Append a positive Top-up, Renewal or Refund entry.

        Raises:
            ValueError: If the action is a Deduction, the amount is not
                positive, or the officer does not exist
        """
        if action not in CREDIT_ACTIONS:
            raise ValueError(f"credit() does not accept action {action.value}")
        units = to_units(amount)
        if units <= 0:
            raise ValueError("credit amount must be > 0")

        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "UPDATE officer SET credits_remaining_units = credits_remaining_units + ? WHERE id = ?",
                (units, officer_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown officer: {officer_id}")
            cursor = conn.execute(
                """
                INSERT INTO ledger_entry
                (officer_id, action, credits_delta_units, related_query_id, remarks, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (officer_id, action.value, units, related_query_id, remarks, timestamp()),
            )
            entry = self._entry(conn, cursor.lastrowid)
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

        logger.info("%s of %s credits for officer %s", action.value, entry.credits_delta, officer_id)
        return entry

    def sweep_expired_reservations(
        self, older_than: timedelta, now: Optional[datetime] = None
    ) -> List[Reservation]:
        """Expire held reservations created before `now - older_than`.

        Recovers credits stranded by a crash between reserving and
        settling. Each expired reservation's amount goes back to its
        officer's balance.

        Returns:
            The reservations that were expired by this sweep
        """
        cutoff = (now or datetime.now()) - older_than
        settled_at = timestamp()
        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                f"""
                SELECT {RESERVATION_COLUMNS} FROM reservation
                WHERE state = ? AND created_at < ?
                ORDER BY created_at
                """,
                (ReservationState.HELD.value, timestamp(cutoff)),
            ).fetchall()
            expired = []
            for row in rows:
                reservation = row_to_reservation(row)
                self._restore(conn, reservation, ReservationState.EXPIRED, settled_at)
                expired.append(Reservation(
                    token=reservation.token,
                    officer_id=reservation.officer_id,
                    amount=reservation.amount,
                    state=ReservationState.EXPIRED,
                    created_at=reservation.created_at,
                    query_id=reservation.query_id,
                    settled_at=datetime.fromisoformat(settled_at),
                ))
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

        for reservation in expired:
            logger.warning(
                "Expired orphaned reservation %s: %s credits returned to officer %s",
                reservation.token, reservation.amount, reservation.officer_id,
            )
        return expired

    def balance(self, officer_id: str) -> Decimal:
        officer = self.repository.get_officer(officer_id)
        if officer is None:
            raise ValueError(f"Unknown officer: {officer_id}")
        return officer.credits_remaining

    def entries(
        self,
        officer_id: Optional[str] = None,
        action: Optional[LedgerAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LedgerEntry]:
        return self.repository.fetch_ledger_entries(
            officer_id=officer_id, action=action, since=since, until=until, limit=limit
        )

    def verify_balance(self, officer_id: str) -> BalanceCheck:
        """Reconcile the materialized balance against ledger and reservations."""
        conn = self.repository.connect()
        try:
            row = conn.execute(
                """
                SELECT o.credits_remaining_units, o.total_credits_units,
                    (SELECT COALESCE(SUM(credits_delta_units), 0)
                     FROM ledger_entry WHERE officer_id = o.id),
                    (SELECT COALESCE(SUM(amount_units), 0)
                     FROM reservation WHERE officer_id = o.id AND state = ?)
                FROM officer o WHERE o.id = ?
                """,
                (ReservationState.HELD.value, officer_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise ValueError(f"Unknown officer: {officer_id}")
        return BalanceCheck(
            officer_id=officer_id,
            credits_remaining=from_units(row[0]),
            total_credits=from_units(row[1]),
            ledger_total=from_units(row[2]),
            held=from_units(row[3]),
        )

    # Internal helpers

    def _load(self, conn, token: str, operation: str) -> Reservation:
        row = conn.execute(
            f"SELECT {RESERVATION_COLUMNS} FROM reservation WHERE token = ?", (token,)
        ).fetchone()
        if row is None:
            conn.rollback()
            self._fail(f"Cannot {operation} unknown reservation {token}")
        return row_to_reservation(row)

    @staticmethod
    def _restore(conn, reservation: Reservation, state: ReservationState, settled_at: str) -> None:
        conn.execute(
            "UPDATE reservation SET state = ?, settled_at = ? WHERE token = ? AND state = ?",
            (state.value, settled_at, reservation.token, ReservationState.HELD.value),
        )
        conn.execute(
            "UPDATE officer SET credits_remaining_units = credits_remaining_units + ? WHERE id = ?",
            (to_units(reservation.amount), reservation.officer_id),
        )

    @staticmethod
    def _entry(conn, entry_id: int) -> LedgerEntry:
        row = conn.execute(
            f"SELECT {LEDGER_COLUMNS} FROM ledger_entry WHERE id = ?", (entry_id,)
        ).fetchone()
        return row_to_ledger_entry(row)

    @staticmethod
    def _fail(message: str) -> None:
        logger.error(message)
        raise InternalInconsistency(message)
