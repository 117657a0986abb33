"""
Unit tests for storage layer.

Tests schema creation, administrative records and the append-only guards.
"""

import os
import shutil
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest

from credit_gateway.storage.db import get_connection
from credit_gateway.storage.models import (
    IntegrationStatus,
    OfficerStatus,
    REDACTED,
)
from credit_gateway.storage.repository import (
    GatewayRepository,
    get_repository,
    initialize_schema,
)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_schema_creation(self):
        """Verify all tables are created."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()
        assert {
            "provider_integration", "rate_plan", "plan_operation", "officer",
            "ledger_entry", "reservation", "query_record",
        } <= tables

    def test_initialize_is_idempotent(self):
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)

    def test_foreign_keys_enabled(self):
        conn = get_connection(self.db_path)
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()


class TestAdministrativeRecords:
    """Test officers, plans and integrations."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = GatewayRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_officer_reports_unreadable_row(self):
        with patch.object(self.repository, "get_officer", return_value=None):
            with pytest.raises(LookupError, match="Officer o1 was not stored"):
                self.repository.create_officer("o1", "Asha")

    def test_register_integration_reports_unreadable_row(self):
        with patch.object(self.repository, "get_integration", return_value=None):
            with pytest.raises(LookupError, match="Integration rc was not stored"):
                self.repository.register_integration("rc", "Vehicle RC", "signzy", 3, "key")

    def test_create_officer_sets_opening_allotment(self):
        officer = self.repository.create_officer("o1", "Asha", total_credits="12.5")
        assert officer.credits_remaining == Decimal("12.50")
        assert officer.total_credits == Decimal("12.50")
        assert officer.status == OfficerStatus.ACTIVE
        assert officer.plan_id is None
        assert officer.total_queries == 0

    def test_get_missing_officer_returns_none(self):
        assert self.repository.get_officer("missing") is None

    def test_officer_with_unknown_plan_rejected(self):
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.create_officer("o1", "Asha", plan_id="no-such-plan")

    def test_rate_plan_round_trip(self):
        self.repository.create_rate_plan("pro", "Pro", ["vehicle_rc_search", "upi_info"])
        plan = self.repository.get_rate_plan("pro")
        assert plan.name == "Pro"
        assert plan.allowed_operation_tags == frozenset({"vehicle_rc_search", "upi_info"})

    def test_status_and_plan_updates(self):
        self.repository.create_rate_plan("basic", "Basic", [])
        self.repository.create_officer("o1", "Asha")
        self.repository.set_officer_status("o1", OfficerStatus.SUSPENDED)
        self.repository.assign_plan("o1", "basic")

        officer = self.repository.get_officer("o1")
        assert officer.status == OfficerStatus.SUSPENDED
        assert officer.plan_id == "basic"

    def test_register_integration(self):
        integration = self.repository.register_integration(
            "signzy-rc", "Vehicle RC", "signzy", "3", "secret-key"
        )
        assert integration.credit_cost == Decimal("3.00")
        assert integration.credential == "secret-key"
        assert integration.status == IntegrationStatus.ACTIVE
        assert integration.redacted().credential == REDACTED

    def test_find_by_provider_tag_prefers_active(self):
        self.repository.register_integration(
            "a-old", "Old", "signzy", 1, "k1", status=IntegrationStatus.DISABLED
        )
        self.repository.register_integration("b-new", "New", "signzy", 1, "k2")
        assert self.repository.find_integration_by_provider_tag("signzy").id == "b-new"
        assert self.repository.find_integration_by_provider_tag("unknown") is None

    def test_record_integration_usage(self):
        self.repository.register_integration("signzy-rc", "Vehicle RC", "signzy", 3, "k")
        self.repository.record_integration_usage("signzy-rc")
        self.repository.record_integration_usage("signzy-rc")
        integration = self.repository.get_integration("signzy-rc")
        assert integration.usage_count == 2
        assert integration.last_used is not None

    def test_get_repository_follows_db_path(self):
        repository = get_repository(self.db_path)
        assert repository.db_path == self.db_path
        assert get_repository(self.db_path) is repository
        other = get_repository(os.path.join(self.temp_dir, "other.db"))
        assert other is not repository


class TestAppendOnlyGuards:
    """Test triggers and constraints protecting history."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        GatewayRepository(self.db_path).create_officer("o1", "Asha", total_credits=5)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _execute(self, sql, params=()):
        conn = get_connection(self.db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def _insert_entry(self, query_id="q1"):
        self._execute(
            """
            INSERT INTO ledger_entry
            (officer_id, action, credits_delta_units, related_query_id, remarks, created_at)
            VALUES ('o1', 'Deduction', -100, ?, NULL, '2024-01-01T00:00:00.000000')
            """,
            (query_id,),
        )

    def test_ledger_entry_cannot_be_updated(self):
        self._insert_entry()
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            self._execute("UPDATE ledger_entry SET credits_delta_units = 0")

    def test_ledger_entry_cannot_be_deleted(self):
        self._insert_entry()
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            self._execute("DELETE FROM ledger_entry")

    def test_one_deduction_per_query(self):
        self._insert_entry("q1")
        with pytest.raises(sqlite3.IntegrityError):
            self._insert_entry("q1")

    def test_failed_record_cannot_carry_charge(self):
        with pytest.raises(sqlite3.IntegrityError):
            self._execute(
                """
                INSERT INTO query_record
                (id, officer_id, operation_tag, input_summary, status,
                 credits_charged_units, attempt, created_at)
                VALUES ('q1', 'o1', 'op', '', 'Failed', 300, 1, '2024-01-01T00:00:00.000000')
                """
            )

    def test_terminal_query_record_is_final(self):
        self._execute(
            """
            INSERT INTO query_record
            (id, officer_id, operation_tag, input_summary, status,
             credits_charged_units, attempt, created_at)
            VALUES ('q1', 'o1', 'op', '', 'Success', 300, 1, '2024-01-01T00:00:00.000000')
            """
        )
        with pytest.raises(sqlite3.DatabaseError, match="immutable"):
            self._execute("UPDATE query_record SET status = 'Failed', credits_charged_units = 0")

    def test_balance_cannot_go_negative(self):
        with pytest.raises(sqlite3.IntegrityError):
            self._execute("UPDATE officer SET credits_remaining_units = -1 WHERE id = 'o1'")
