"""
Query log.

Append-only audit trail of every lookup attempt. A record is written
Pending when the provider call starts and moved to a terminal state
exactly once; rejected attempts are written directly as Failed. The
table's triggers refuse any change to a terminal record.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .credits import to_units
from .errors import ErrorKind, InternalInconsistency
from credit_gateway.storage.models import QueryRecord, QueryStatus
from credit_gateway.storage.repository import GatewayRepository, QUERY_COLUMNS, timestamp

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 500


def summarize_input(payload: Dict[str, Any]) -> str:
    """Render a lookup payload as a short human-readable summary."""
    parts = [f"{key}: {value}" for key, value in payload.items() if value not in (None, "")]
    return _truncate(", ".join(parts))


def _truncate(text: Optional[str]) -> Optional[str]:
    if text is None or len(text) <= MAX_SUMMARY_LENGTH:
        return text
    return text[:MAX_SUMMARY_LENGTH - 3] + "..."


class QueryLog:
    """Writer for query records. Reads go through the repository."""

    def __init__(self, repository: GatewayRepository):
        self.repository = repository

    def reject(
        self,
        query_id: str,
        officer_id: str,
        operation_tag: str,
        input_summary: str,
        error_kind: ErrorKind,
        summary: str,
        provider_tag: Optional[str] = None,
        attempt: int = 1,
    ) -> QueryRecord:
        """Record an attempt that was refused before any provider call."""
        now = timestamp()
        self._write(
            f"""
            INSERT INTO query_record ({QUERY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 0, ?, ?, ?, ?)
            """,
            (query_id, officer_id, operation_tag, _truncate(input_summary), provider_tag,
             QueryStatus.FAILED.value, _truncate(summary), error_kind.value, attempt, now, now),
            officer_id,
        )
        logger.info(
            "Query %s rejected for officer %s (%s): %s",
            query_id, officer_id, error_kind.value, summary,
        )
        return self._get(query_id)

    def start(
        self,
        query_id: str,
        officer_id: str,
        operation_tag: str,
        input_summary: str,
        provider_tag: str,
        attempt: int = 1,
    ) -> QueryRecord:
        """Record a lookup whose provider call is about to start."""
        conn = self.repository.connect()
        try:
            conn.execute(
                f"""
                INSERT INTO query_record ({QUERY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, 0, NULL, ?, ?, NULL)
                """,
                (query_id, officer_id, operation_tag, _truncate(input_summary), provider_tag,
                 QueryStatus.PENDING.value, attempt, timestamp()),
            )
            conn.commit()
        finally:
            conn.close()
        return self._get(query_id)

    def succeed(
        self,
        query_id: str,
        result_summary: str,
        full_result: Any,
        credits_charged: Decimal,
    ) -> QueryRecord:
        """Move a pending record to Success."""
        self._finish(
            query_id,
            QueryStatus.SUCCESS,
            result_summary,
            json.dumps(full_result, default=str) if full_result is not None else None,
            to_units(credits_charged),
            None,
        )
        return self._get(query_id)

    def fail(self, query_id: str, error_kind: ErrorKind, summary: str) -> QueryRecord:
        """Move a pending record to Failed. Failed records are never billed."""
        self._finish(query_id, QueryStatus.FAILED, summary, None, 0, error_kind.value)
        return self._get(query_id)

    def history(
        self,
        officer_id: Optional[str] = None,
        status: Optional[QueryStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[QueryRecord]:
        return self.repository.fetch_query_records(
            officer_id=officer_id, status=status, since=since, until=until, limit=limit
        )

    def _finish(
        self,
        query_id: str,
        status: QueryStatus,
        summary: Optional[str],
        full_result: Optional[str],
        credits_units: int,
        error_kind: Optional[str],
    ) -> None:
        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT officer_id, status FROM query_record WHERE id = ?", (query_id,)
            ).fetchone()
            if row is None or row[1] != QueryStatus.PENDING.value:
                conn.rollback()
                state = "unknown" if row is None else row[1].lower()
                message = f"Cannot finish query {query_id}: record is {state}"
                logger.error(message)
                raise InternalInconsistency(message)
            conn.execute(
                """
                UPDATE query_record
                SET status = ?, result_summary = ?, full_result = ?,
                    credits_charged_units = ?, error_kind = ?, completed_at = ?
                WHERE id = ?
                """,
                (status.value, _truncate(summary), full_result, credits_units,
                 error_kind, timestamp(), query_id),
            )
            self._touch_officer(conn, row[0])
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("Query %s finished as %s", query_id, status.value)

    def _write(self, sql: str, params: tuple, officer_id: str) -> None:
        conn = self.repository.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(sql, params)
            self._touch_officer(conn, officer_id)
            conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _touch_officer(conn, officer_id: str) -> None:
        conn.execute(
            "UPDATE officer SET total_queries = total_queries + 1, last_active = ? WHERE id = ?",
            (timestamp(), officer_id),
        )

    def _get(self, query_id: str) -> QueryRecord:
        record = self.repository.get_query_record(query_id)
        if record is None:
            raise InternalInconsistency(f"Query record {query_id} is missing")
        return record
