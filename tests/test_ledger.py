"""
Unit tests for the credit ledger.

Tests reservations, settlement, top-ups, the expiry sweep and the
balance invariant, including concurrent reservations.
"""

import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from credit_gateway.core.errors import InsufficientCredits, InternalInconsistency
from credit_gateway.core.ledger import Ledger, ReservationToken
from credit_gateway.storage.models import LedgerAction, ReservationState
from credit_gateway.storage.repository import GatewayRepository, initialize_schema


class LedgerTestCase:
    """Shared fixture: one officer with 5 credits."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = GatewayRepository(self.db_path)
        self.repository.create_officer("o1", "Asha", total_credits=5)
        self.ledger = Ledger(self.repository)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestReservations(LedgerTestCase):
    """Test reserve, commit and release."""

    def test_reserve_holds_credits(self):
        token = self.ledger.reserve("o1", 3, query_id="q1")

        assert token.amount == Decimal("3.00")
        assert token.query_id == "q1"
        assert self.ledger.balance("o1") == Decimal("2.00")
        reservation = self.repository.get_reservation(token.token)
        assert reservation.state == ReservationState.HELD
        assert self.repository.fetch_ledger_entries("o1") == []

    def test_reserve_insufficient(self):
        with pytest.raises(InsufficientCredits) as excinfo:
            self.ledger.reserve("o1", "5.01")

        assert str(excinfo.value) == "Insufficient credits. Required: 5.01, Available: 5.00"
        assert self.ledger.balance("o1") == Decimal("5.00")
        assert self.repository.fetch_reservations("o1") == []

    def test_reserve_exact_balance(self):
        self.ledger.reserve("o1", 5)
        assert self.ledger.balance("o1") == Decimal("0.00")

    def test_reserve_unknown_officer(self):
        with pytest.raises(ValueError, match="Unknown officer"):
            self.ledger.reserve("ghost", 1)

    def test_commit_writes_one_deduction(self):
        token = self.ledger.reserve("o1", 3, query_id="q1")
        entry = self.ledger.commit(token, "q1")

        assert entry.action == LedgerAction.DEDUCTION
        assert entry.credits_delta == Decimal("-3.00")
        assert entry.related_query_id == "q1"
        assert self.ledger.balance("o1") == Decimal("2.00")
        assert self.repository.get_reservation(token.token).state == ReservationState.COMMITTED

    def test_commit_twice_is_noop(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.commit(token, "q1")

        assert self.ledger.commit(token, "q1") is None
        assert len(self.repository.fetch_ledger_entries("o1")) == 1
        assert self.ledger.balance("o1") == Decimal("2.00")

    def test_zero_cost_commit_writes_no_entry(self):
        token = self.ledger.reserve("o1", 0)
        assert self.ledger.commit(token, "q1") is None
        assert self.repository.fetch_ledger_entries("o1") == []
        assert self.ledger.balance("o1") == Decimal("5.00")

    def test_release_restores_balance(self):
        token = self.ledger.reserve("o1", 3)

        assert self.ledger.release(token) is True
        assert self.ledger.balance("o1") == Decimal("5.00")
        assert self.repository.get_reservation(token.token).state == ReservationState.RELEASED
        assert self.repository.fetch_ledger_entries("o1") == []

    def test_release_twice_is_noop(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.release(token)

        assert self.ledger.release(token) is False
        assert self.ledger.balance("o1") == Decimal("5.00")

    def test_commit_after_release_is_inconsistent(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.release(token)

        with pytest.raises(InternalInconsistency, match="already released"):
            self.ledger.commit(token, "q1")
        assert self.ledger.balance("o1") == Decimal("5.00")

    def test_release_after_commit_is_inconsistent(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.commit(token, "q1")

        with pytest.raises(InternalInconsistency, match="already committed"):
            self.ledger.release(token)
        assert self.ledger.balance("o1") == Decimal("2.00")

    def test_unknown_token_is_inconsistent(self):
        token = ReservationToken("nope", "o1", Decimal("1.00"), datetime.now())
        with pytest.raises(InternalInconsistency, match="unknown reservation"):
            self.ledger.commit(token, "q1")
        with pytest.raises(InternalInconsistency, match="unknown reservation"):
            self.ledger.release(token)


class TestCredits(LedgerTestCase):
    """Test positive ledger entries."""

    def test_top_up(self):
        entry = self.ledger.credit("o1", 10, remarks="Monthly allotment")

        assert entry.action == LedgerAction.TOP_UP
        assert entry.credits_delta == Decimal("10.00")
        assert entry.remarks == "Monthly allotment"
        assert self.ledger.balance("o1") == Decimal("15.00")

    def test_refund_links_query(self):
        entry = self.ledger.credit("o1", 3, action=LedgerAction.REFUND, related_query_id="q1")
        assert entry.related_query_id == "q1"

    def test_credit_rejects_deduction(self):
        with pytest.raises(ValueError, match="does not accept"):
            self.ledger.credit("o1", 3, action=LedgerAction.DEDUCTION)

    def test_credit_rejects_zero(self):
        with pytest.raises(ValueError, match="must be > 0"):
            self.ledger.credit("o1", 0)

    def test_credit_unknown_officer(self):
        with pytest.raises(ValueError, match="Unknown officer"):
            self.ledger.credit("ghost", 1)
        assert self.repository.fetch_ledger_entries("ghost") == []

    def test_ledger_filters(self):
        self.ledger.credit("o1", 1)
        self.ledger.credit("o1", 2, action=LedgerAction.RENEWAL)
        renewals = self.ledger.entries("o1", action=LedgerAction.RENEWAL)
        assert [entry.credits_delta for entry in renewals] == [Decimal("2.00")]
        newest_first = self.ledger.entries(officer_id="o1", limit=1)
        assert newest_first[0].action == LedgerAction.RENEWAL


class TestSweep(LedgerTestCase):
    """Test expiry of orphaned reservations."""

    def test_sweep_expires_old_reservations(self):
        token = self.ledger.reserve("o1", 3, query_id="q1")

        expired = self.ledger.sweep_expired_reservations(
            timedelta(minutes=15), now=datetime.now() + timedelta(minutes=16)
        )

        assert [reservation.token for reservation in expired] == [token.token]
        assert expired[0].state == ReservationState.EXPIRED
        assert expired[0].query_id == "q1"
        assert self.ledger.balance("o1") == Decimal("5.00")

    def test_sweep_keeps_fresh_reservations(self):
        self.ledger.reserve("o1", 3)
        expired = self.ledger.sweep_expired_reservations(timedelta(minutes=15))
        assert expired == []
        assert self.ledger.balance("o1") == Decimal("2.00")

    def test_sweep_ignores_settled_reservations(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.commit(token, "q1")
        assert self.ledger.sweep_expired_reservations(timedelta(0)) == []

    def test_commit_after_expiry_is_inconsistent(self):
        token = self.ledger.reserve("o1", 3)
        self.ledger.sweep_expired_reservations(timedelta(0))

        with pytest.raises(InternalInconsistency, match="already expired"):
            self.ledger.commit(token, "q1")
        assert self.ledger.release(token) is False
        assert self.ledger.balance("o1") == Decimal("5.00")


class TestBalanceInvariant(LedgerTestCase):
    """Test balance reconciliation and concurrent reservations."""

    def test_invariant_holds_through_mixed_operations(self):
        self.ledger.credit("o1", 10)
        committed = self.ledger.reserve("o1", 3)
        self.ledger.commit(committed, "q1")
        released = self.ledger.reserve("o1", 2)
        self.ledger.release(released)
        self.ledger.reserve("o1", 4)

        check = self.ledger.verify_balance("o1")
        assert check.consistent
        assert check.credits_remaining == Decimal("8.00")
        assert check.total_credits == Decimal("5.00")
        assert check.ledger_total == Decimal("7.00")
        assert check.held == Decimal("4.00")

    def test_verify_unknown_officer(self):
        with pytest.raises(ValueError):
            self.ledger.verify_balance("ghost")

    def test_concurrent_reservations_never_overdraw(self):
        """Two reservations of 3 against a balance of 5: exactly one wins."""
        barrier = threading.Barrier(2)
        outcomes = []

        def reserve():
            barrier.wait()
            try:
                outcomes.append(self.ledger.reserve("o1", 3))
            except InsufficientCredits as e:
                outcomes.append(e)

        threads = [threading.Thread(target=reserve) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        tokens = [o for o in outcomes if isinstance(o, ReservationToken)]
        failures = [o for o in outcomes if isinstance(o, InsufficientCredits)]
        assert len(tokens) == 1
        assert len(failures) == 1
        assert self.ledger.balance("o1") == Decimal("2.00")
        assert self.ledger.verify_balance("o1").consistent

    def test_many_concurrent_reservations(self):
        outcomes = []
        lock = threading.Lock()

        def reserve():
            try:
                result = self.ledger.reserve("o1", 1)
            except InsufficientCredits as e:
                result = e
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=reserve) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(isinstance(o, ReservationToken) for o in outcomes) == 5
        assert self.ledger.balance("o1") == Decimal("0.00")
        assert self.ledger.verify_balance("o1").consistent
