"""
Repository pattern for data access.

Owns the schema and the administrative records (officers, rate plans,
provider integrations), plus read-only history queries over the ledger
and the query log. The credit and audit write paths live in
credit_gateway.core.ledger and credit_gateway.core.query_log.
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from credit_gateway.core.credits import from_units, to_units
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    IntegrationStatus,
    LedgerAction,
    LedgerEntry,
    Officer,
    OfficerStatus,
    ProviderIntegration,
    QueryRecord,
    QueryStatus,
    RatePlan,
    Reservation,
    ReservationState,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS provider_integration (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    provider_tag TEXT NOT NULL,
    status TEXT NOT NULL,
    credit_cost_units INTEGER NOT NULL CHECK (credit_cost_units >= 0),
    credential TEXT NOT NULL DEFAULT '',
    usage_count INTEGER NOT NULL DEFAULT 0,
    last_used TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_plan (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS plan_operation (
    plan_id TEXT NOT NULL REFERENCES rate_plan(id) ON DELETE CASCADE,
    operation_tag TEXT NOT NULL,
    PRIMARY KEY (plan_id, operation_tag)
);

CREATE TABLE IF NOT EXISTS officer (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    plan_id TEXT REFERENCES rate_plan(id),
    credits_remaining_units INTEGER NOT NULL CHECK (credits_remaining_units >= 0),
    total_credits_units INTEGER NOT NULL CHECK (total_credits_units >= 0),
    total_queries INTEGER NOT NULL DEFAULT 0,
    last_active TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    officer_id TEXT NOT NULL REFERENCES officer(id),
    action TEXT NOT NULL,
    credits_delta_units INTEGER NOT NULL,
    related_query_id TEXT,
    remarks TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ledger_entry_one_deduction_per_query
    ON ledger_entry (related_query_id)
    WHERE action = 'Deduction' AND related_query_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS ledger_entry_officer
    ON ledger_entry (officer_id, created_at);

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_update
    BEFORE UPDATE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger_entry is append-only');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_delete
    BEFORE DELETE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger_entry is append-only');
END;

CREATE TABLE IF NOT EXISTS reservation (
    token TEXT PRIMARY KEY,
    officer_id TEXT NOT NULL REFERENCES officer(id),
    amount_units INTEGER NOT NULL CHECK (amount_units >= 0),
    state TEXT NOT NULL,
    query_id TEXT,
    created_at TEXT NOT NULL,
    settled_at TEXT
);

CREATE INDEX IF NOT EXISTS reservation_state
    ON reservation (state, created_at);

CREATE TABLE IF NOT EXISTS query_record (
    id TEXT PRIMARY KEY,
    officer_id TEXT NOT NULL,
    operation_tag TEXT NOT NULL,
    input_summary TEXT NOT NULL,
    provider_tag TEXT,
    status TEXT NOT NULL,
    result_summary TEXT,
    full_result TEXT,
    credits_charged_units INTEGER NOT NULL DEFAULT 0,
    error_kind TEXT,
    attempt INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    CHECK (status != 'Failed' OR credits_charged_units = 0)
);

CREATE INDEX IF NOT EXISTS query_record_officer
    ON query_record (officer_id, created_at);

CREATE TRIGGER IF NOT EXISTS query_record_terminal_is_final
    BEFORE UPDATE ON query_record
    WHEN OLD.status != 'Pending'
BEGIN
    SELECT RAISE(ABORT, 'query_record is immutable once terminal');
END;

CREATE TRIGGER IF NOT EXISTS query_record_no_delete
    BEFORE DELETE ON query_record
BEGIN
    SELECT RAISE(ABORT, 'query_record is append-only');
END;
"""


def timestamp(value: Optional[datetime] = None) -> str:
    """Serialize a datetime with a fixed width so stored values sort correctly."""
    return (value or datetime.now()).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all gateway tables, indexes and guard triggers if missing.

    The ledger and query log tables are protected by triggers so that
    no UPDATE or DELETE can rewrite history.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def row_to_officer(row: Sequence[Any]) -> Officer:
    return Officer(
        id=row[0],
        name=row[1],
        status=OfficerStatus(row[2]),
        plan_id=row[3],
        credits_remaining=from_units(row[4]),
        total_credits=from_units(row[5]),
        total_queries=row[6],
        last_active=parse_timestamp(row[7]),
    )


def row_to_integration(row: Sequence[Any]) -> ProviderIntegration:
    return ProviderIntegration(
        id=row[0],
        name=row[1],
        provider_tag=row[2],
        status=IntegrationStatus(row[3]),
        credit_cost=from_units(row[4]),
        credential=row[5],
        usage_count=row[6],
        last_used=parse_timestamp(row[7]),
    )


def row_to_ledger_entry(row: Sequence[Any]) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        officer_id=row[1],
        action=LedgerAction(row[2]),
        credits_delta=from_units(row[3]),
        related_query_id=row[4],
        remarks=row[5],
        created_at=datetime.fromisoformat(row[6]),
    )


def row_to_reservation(row: Sequence[Any]) -> Reservation:
    return Reservation(
        token=row[0],
        officer_id=row[1],
        amount=from_units(row[2]),
        state=ReservationState(row[3]),
        query_id=row[4],
        created_at=datetime.fromisoformat(row[5]),
        settled_at=parse_timestamp(row[6]),
    )


def row_to_query_record(row: Sequence[Any]) -> QueryRecord:
    return QueryRecord(
        id=row[0],
        officer_id=row[1],
        operation_tag=row[2],
        input_summary=row[3],
        provider_tag=row[4],
        status=QueryStatus(row[5]),
        result_summary=row[6],
        full_result=json.loads(row[7]) if row[7] is not None else None,
        credits_charged=from_units(row[8]),
        error_kind=row[9],
        attempt=row[10],
        created_at=datetime.fromisoformat(row[11]),
        completed_at=parse_timestamp(row[12]),
    )


OFFICER_COLUMNS = """id, name, status, plan_id, credits_remaining_units,
    total_credits_units, total_queries, last_active"""

INTEGRATION_COLUMNS = """id, name, provider_tag, status, credit_cost_units,
    credential, usage_count, last_used"""

LEDGER_COLUMNS = """id, officer_id, action, credits_delta_units,
    related_query_id, remarks, created_at"""

RESERVATION_COLUMNS = """token, officer_id, amount_units, state, query_id,
    created_at, settled_at"""

QUERY_COLUMNS = """id, officer_id, operation_tag, input_summary, provider_tag,
    status, result_summary, full_result, credits_charged_units, error_kind,
    attempt, created_at, completed_at"""


def _history_filters(
    officer_id: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
) -> Tuple[List[str], List[Any]]:
    conditions: List[str] = []
    params: List[Any] = []
    if officer_id:
        conditions.append("officer_id = ?")
        params.append(officer_id)
    if since is not None:
        conditions.append("created_at >= ?")
        params.append(timestamp(since))
    if until is not None:
        conditions.append("created_at < ?")
        params.append(timestamp(until))
    return conditions, params


class GatewayRepository:
    """Repository for administrative records and history reads.

    Officers, rate plans and provider integrations are created here by
    administrative tooling. Officer balances are only ever seeded here,
    at creation; afterwards they move exclusively through the ledger.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    # Rate plans

    def create_rate_plan(
        self, plan_id: str, name: str, allowed_operation_tags: Iterable[str]
    ) -> RatePlan:
        """Create a rate plan together with its allowed operation tags."""
        tags = frozenset(allowed_operation_tags)
        conn = self.connect()
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(
                "INSERT INTO rate_plan (id, name, created_at) VALUES (?, ?, ?)",
                (plan_id, name, timestamp()),
            )
            conn.executemany(
                "INSERT INTO plan_operation (plan_id, operation_tag) VALUES (?, ?)",
                [(plan_id, tag) for tag in sorted(tags)],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return RatePlan(id=plan_id, name=name, allowed_operation_tags=tags)

    def get_rate_plan(self, plan_id: str) -> Optional[RatePlan]:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT id, name FROM rate_plan WHERE id = ?", (plan_id,)
            ).fetchone()
            if row is None:
                return None
            tags = conn.execute(
                "SELECT operation_tag FROM plan_operation WHERE plan_id = ?",
                (plan_id,),
            ).fetchall()
            return RatePlan(
                id=row[0],
                name=row[1],
                allowed_operation_tags=frozenset(tag for (tag,) in tags),
            )
        finally:
            conn.close()

    # Officers

    def create_officer(
        self,
        officer_id: str,
        name: str,
        plan_id: Optional[str] = None,
        total_credits: Any = 0,
        status: OfficerStatus = OfficerStatus.ACTIVE,
    ) -> Officer:
        """Register an officer with an opening credit allotment.

        The allotment becomes both total_credits and the starting
        credits_remaining; every later change goes through the ledger.
        """
        units = to_units(total_credits)
        conn = self.connect()
        try:
            conn.execute(
                f"""
                INSERT INTO officer ({OFFICER_COLUMNS}, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?)
                """,
                (officer_id, name, status.value, plan_id, units, units, timestamp()),
            )
            conn.commit()
        finally:
            conn.close()
        officer = self.get_officer(officer_id)
        if officer is None:
            raise LookupError(f"Officer {officer_id} was not stored")
        return officer

    def get_officer(self, officer_id: str) -> Optional[Officer]:
        conn = self.connect()
        try:
            row = conn.execute(
                f"SELECT {OFFICER_COLUMNS} FROM officer WHERE id = ?", (officer_id,)
            ).fetchone()
            return row_to_officer(row) if row else None
        finally:
            conn.close()

    def list_officers(self) -> List[Officer]:
        conn = self.connect()
        try:
            rows = conn.execute(
                f"SELECT {OFFICER_COLUMNS} FROM officer ORDER BY id"
            ).fetchall()
            return [row_to_officer(row) for row in rows]
        finally:
            conn.close()

    def set_officer_status(self, officer_id: str, status: OfficerStatus) -> None:
        conn = self.connect()
        try:
            conn.execute(
                "UPDATE officer SET status = ? WHERE id = ?", (status.value, officer_id)
            )
            conn.commit()
        finally:
            conn.close()

    def assign_plan(self, officer_id: str, plan_id: Optional[str]) -> None:
        conn = self.connect()
        try:
            conn.execute(
                "UPDATE officer SET plan_id = ? WHERE id = ?", (plan_id, officer_id)
            )
            conn.commit()
        finally:
            conn.close()

    # Provider integrations

    def register_integration(
        self,
        integration_id: str,
        name: str,
        provider_tag: str,
        credit_cost: Any,
        credential: str,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
    ) -> ProviderIntegration:
        conn = self.connect()
        try:
            conn.execute(
                f"""
                INSERT INTO provider_integration ({INTEGRATION_COLUMNS}, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?)
                """,
                (
                    integration_id,
                    name,
                    provider_tag,
                    status.value,
                    to_units(credit_cost),
                    credential,
                    timestamp(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        integration = self.get_integration(integration_id)
        if integration is None:
            raise LookupError(f"Integration {integration_id} was not stored")
        return integration

    def set_integration_status(
        self, integration_id: str, status: IntegrationStatus
    ) -> None:
        conn = self.connect()
        try:
            conn.execute(
                "UPDATE provider_integration SET status = ? WHERE id = ?",
                (status.value, integration_id),
            )
            conn.commit()
        finally:
            conn.close()

    def get_integration(self, integration_id: str) -> Optional[ProviderIntegration]:
        conn = self.connect()
        try:
            row = conn.execute(
                f"SELECT {INTEGRATION_COLUMNS} FROM provider_integration WHERE id = ?",
                (integration_id,),
            ).fetchone()
            return row_to_integration(row) if row else None
        finally:
            conn.close()

    def find_integration_by_provider_tag(
        self, provider_tag: str
    ) -> Optional[ProviderIntegration]:
        """Return the integration registered for a provider tag.

        When several are registered, an Active one is preferred, then the
        earliest registered.
        """
        conn = self.connect()
        try:
            row = conn.execute(
                f"""
                SELECT {INTEGRATION_COLUMNS} FROM provider_integration
                WHERE provider_tag = ?
                ORDER BY CASE status WHEN 'Active' THEN 0 ELSE 1 END, created_at
                LIMIT 1
                """,
                (provider_tag,),
            ).fetchone()
            return row_to_integration(row) if row else None
        finally:
            conn.close()

    def list_integrations(self) -> List[ProviderIntegration]:
        conn = self.connect()
        try:
            rows = conn.execute(
                f"SELECT {INTEGRATION_COLUMNS} FROM provider_integration ORDER BY id"
            ).fetchall()
            return [row_to_integration(row) for row in rows]
        finally:
            conn.close()

    def record_integration_usage(self, integration_id: str) -> None:
        conn = self.connect()
        try:
            conn.execute(
                """
                UPDATE provider_integration
                SET usage_count = usage_count + 1, last_used = ?
                WHERE id = ?
                """,
                (timestamp(), integration_id),
            )
            conn.commit()
        finally:
            conn.close()

    # History

    def fetch_ledger_entries(
        self,
        officer_id: Optional[str] = None,
        action: Optional[LedgerAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LedgerEntry]:
        """Fetch ledger entries, newest first, with optional filters.

        Args:
            officer_id: Optional filter for a specific officer
            action: Optional filter for a transaction kind
            since: Optional inclusive lower bound on created_at
            until: Optional exclusive upper bound on created_at
            limit: Maximum number of entries to return

        Returns:
            List of ledger entries ordered by id (newest first)
        """
        conditions, params = _history_filters(officer_id, since, until)
        if action is not None:
            conditions.append("action = ?")
            params.append(action.value)
        query = f"SELECT {LEDGER_COLUMNS} FROM ledger_entry"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = self.connect()
        try:
            return [row_to_ledger_entry(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def fetch_query_records(
        self,
        officer_id: Optional[str] = None,
        status: Optional[QueryStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[QueryRecord]:
        """Fetch query records, newest first, with optional filters.

        Args:
            officer_id: Optional filter for a specific officer
            status: Optional filter for record status
            since: Optional inclusive lower bound on created_at
            until: Optional exclusive upper bound on created_at
            limit: Maximum number of records to return

        Returns:
            List of query records ordered by created_at (newest first)
        """
        conditions, params = _history_filters(officer_id, since, until)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        query = f"SELECT {QUERY_COLUMNS} FROM query_record"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        conn = self.connect()
        try:
            return [row_to_query_record(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def get_query_record(self, query_id: str) -> Optional[QueryRecord]:
        conn = self.connect()
        try:
            row = conn.execute(
                f"SELECT {QUERY_COLUMNS} FROM query_record WHERE id = ?", (query_id,)
            ).fetchone()
            return row_to_query_record(row) if row else None
        finally:
            conn.close()

    def fetch_reservations(
        self,
        officer_id: Optional[str] = None,
        state: Optional[ReservationState] = None,
    ) -> List[Reservation]:
        conditions, params = _history_filters(officer_id, None, None)
        if state is not None:
            conditions.append("state = ?")
            params.append(state.value)
        query = f"SELECT {RESERVATION_COLUMNS} FROM reservation"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at"

        conn = self.connect()
        try:
            return [row_to_reservation(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def get_reservation(self, token: str) -> Optional[Reservation]:
        conn = self.connect()
        try:
            row = conn.execute(
                f"SELECT {RESERVATION_COLUMNS} FROM reservation WHERE token = ?",
                (token,),
            ).fetchone()
            return row_to_reservation(row) if row else None
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[GatewayRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> GatewayRepository:
    """Get a repository instance.

    Returns a process-wide GatewayRepository, created on first use.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of GatewayRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = GatewayRepository(db_path)
    return _default_repository
