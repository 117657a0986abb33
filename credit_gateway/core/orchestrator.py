"""
Gateway orchestrator.

Runs one PRO lookup through a fixed sequence of states:

    Authorizing -> Reserving -> Invoking -> Settling -> Success | Failed

Rejections in Authorizing or Reserving are written to the query log as
Failed and never hold credits. Once a reservation exists, it is settled
exactly once: committed on a provider result, released on a provider
error. The query record reaches a terminal state exactly once, whatever
happens in between. Retries are new invocations with new records.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from .authorization import PlanAuthorization
from .credentials import CredentialStore
from .errors import (
    AuthorizationDenied,
    ErrorKind,
    InsufficientCredits,
    InternalInconsistency,
    ProviderError,
    ProviderUnavailable,
    RETRYABLE_KINDS,
)
from .ledger import Ledger, ReservationToken
from .query_log import QueryLog, summarize_input
from credit_gateway.adapters import NormalizedResult, ProviderAdapter, build_adapter
from credit_gateway.config.loader import GatewayConfig, default_config
from credit_gateway.storage.models import ProviderIntegration, QueryStatus, Reservation
from credit_gateway.storage.repository import GatewayRepository

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Search failed. Please try again."


@dataclass(frozen=True)
class InvocationResult:
    """What the caller gets back from a lookup."""
    query_id: str
    status: QueryStatus
    result_summary: str
    credits_charged: Decimal
    message: str
    full_result: Optional[Dict[str, Any]] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == QueryStatus.SUCCESS


class GatewayOrchestrator:
    """Coordinates authorization, billing, the provider call and the audit log.

    Adapters are looked up by the integration's provider tag. Pass
    `adapters` to supply instances directly (tests use scripted fakes);
    otherwise they are built from the registry on first use.
    """

    def __init__(
        self,
        repository: GatewayRepository,
        config: Optional[GatewayConfig] = None,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
        max_workers: int = 16,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.config = config or default_config()
        self.credentials = CredentialStore(repository)
        self.authorization = PlanAuthorization(repository)
        self.ledger = Ledger(repository)
        self.query_log = QueryLog(repository)
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._sleep = sleep
        self._invocation_pool = ThreadPoolExecutor(max_workers, thread_name_prefix="invocation")

    def __enter__(self) -> "GatewayOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._invocation_pool.shutdown(wait=True)
        for adapter in self._adapters.values():
            adapter.close()

    def adapter_for(self, provider_tag: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_tag)
        if adapter is None:
            try:
                adapter = build_adapter(
                    provider_tag,
                    base_url=self.config.base_url_for(provider_tag),
                    timeout=self.config.gateway.timeout_seconds,
                )
            except KeyError:
                raise ProviderUnavailable(f"No adapter available for provider '{provider_tag}'")
            self._adapters[provider_tag] = adapter
        return adapter

    def invoke(
        self,
        officer_id: str,
        operation_tag: str,
        payload: Mapping[str, Any],
        attempt: int = 1,
    ) -> InvocationResult:
        """Run one lookup for an officer.

        Args:
            officer_id: Officer making the lookup
            operation_tag: Logical operation, e.g. "vehicle_rc_search"
            payload: Operation input
            attempt: Attempt number, recorded on the query record

        Returns:
            InvocationResult describing the terminal query record
        """
        query_id = uuid.uuid4().hex
        input_summary = summarize_input(payload)
        integration: Optional[ProviderIntegration] = None

        try:
            # Authorizing
            officer = self.repository.get_officer(officer_id)
            self.authorization.check(officer, operation_tag)
            integration = self.credentials.get(self.config.integration_for(operation_tag))
            if not self.credentials.is_usable(integration):
                raise ProviderUnavailable(
                    f"{integration.name} is currently {integration.status.value.lower()}"
                )
            adapter = self.adapter_for(integration.provider_tag)
            if not adapter.supports(operation_tag):
                raise ProviderUnavailable(
                    f"Provider '{integration.provider_tag}' does not serve '{operation_tag}'"
                )
            # Reserving
            token = self.ledger.reserve(officer_id, integration.credit_cost, query_id=query_id)
        except (AuthorizationDenied, ProviderUnavailable, InsufficientCredits) as exc:
            self.query_log.reject(
                query_id,
                officer_id,
                operation_tag,
                input_summary,
                exc.kind,
                exc.message,
                provider_tag=integration.provider_tag if integration else None,
                attempt=attempt,
            )
            return InvocationResult(
                query_id=query_id,
                status=QueryStatus.FAILED,
                result_summary=exc.message,
                credits_charged=Decimal("0"),
                message=exc.message,
                error_kind=exc.kind,
                attempts=attempt,
            )

        # Invoking
        try:
            self.query_log.start(
                query_id, officer_id, operation_tag, input_summary,
                integration.provider_tag, attempt=attempt,
            )
        except BaseException:
            self.ledger.release(token)
            raise
        return self._settle(token, integration, adapter, operation_tag, payload, query_id, attempt)

    def invoke_with_retry(
        self, officer_id: str, operation_tag: str, payload: Mapping[str, Any]
    ) -> InvocationResult:
        """Run a lookup, retrying rate-limited and timed-out attempts.

        Each attempt is a separate invocation with its own query record
        and reservation. Delays grow exponentially per the retry config.
        """
        policy = self.config.retry

        def log_retry(retry_state: RetryCallState) -> None:
            result = retry_state.outcome.result()
            logger.info(
                "Query %s failed with %s; retrying %s for officer %s in %.1fs (attempt %d/%d)",
                result.query_id, result.error_kind.value, operation_tag, officer_id,
                retry_state.next_action.sleep, retry_state.attempt_number + 1, policy.max_attempts,
            )

        retrying = Retrying(
            retry=retry_if_result(lambda r: r.error_kind in RETRYABLE_KINDS),
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.backoff_seconds, exp_base=policy.backoff_multiplier
            ),
            sleep=self._sleep,
            before_sleep=log_retry,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        for attempt in retrying:
            with attempt:
                result = self.invoke(
                    officer_id, operation_tag, payload,
                    attempt=attempt.retry_state.attempt_number,
                )
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(result)
        return result

    def submit(
        self,
        officer_id: str,
        operation_tag: str,
        payload: Mapping[str, Any],
        retry: bool = False,
    ) -> "Future[InvocationResult]":
        """Run a lookup on a worker thread.

        Cancelling the returned future once the invocation has started
        has no effect on it: billing and the audit record are always
        settled. At most the caller stops waiting for the result.
        """
        run = self.invoke_with_retry if retry else self.invoke
        return self._invocation_pool.submit(run, officer_id, operation_tag, dict(payload))

    def reconcile(self, older_than: Optional[timedelta] = None) -> List[Reservation]:
        """Expire orphaned reservations and close their pending query records.

        Args:
            older_than: Minimum reservation age; defaults to the configured TTL

        Returns:
            The reservations expired by this run
        """
        if older_than is None:
            older_than = timedelta(seconds=self.config.gateway.reservation_ttl_seconds)
        expired = self.ledger.sweep_expired_reservations(older_than)
        for reservation in expired:
            if reservation.query_id is None:
                continue
            self._fail_if_pending(
                reservation.query_id, "Search failed: reservation expired before settlement"
            )
        return expired

    def _fail_if_pending(self, query_id: str, summary: str) -> None:
        """Fail a query record unless something else already closed it."""
        record = self.repository.get_query_record(query_id)
        if record is None or record.status != QueryStatus.PENDING:
            return
        try:
            self.query_log.fail(query_id, ErrorKind.UNKNOWN, summary)
        except InternalInconsistency:
            # Closed concurrently, by its own invocation or by reconcile
            logger.warning("Query %s was closed while being failed", query_id)

    def _settle(
        self,
        token: ReservationToken,
        integration: ProviderIntegration,
        adapter: ProviderAdapter,
        operation_tag: str,
        payload: Mapping[str, Any],
        query_id: str,
        attempt: int,
    ) -> InvocationResult:
        try:
            result = self._call_provider(adapter, operation_tag, integration.credential, payload)
        except ProviderError as exc:
            self.ledger.release(token)
            self.query_log.fail(query_id, exc.kind, f"Search failed: {exc.message}")
            logger.info(
                "Query %s for officer %s failed at provider %s (%s)",
                query_id, token.officer_id, integration.provider_tag, exc.kind.value,
            )
            return InvocationResult(
                query_id=query_id,
                status=QueryStatus.FAILED,
                result_summary=f"Search failed: {exc.message}",
                credits_charged=Decimal("0"),
                message=GENERIC_FAILURE_MESSAGE,
                error_kind=exc.kind,
                attempts=attempt,
            )
        except BaseException as exc:
            self.ledger.release(token)
            self._fail_if_pending(query_id, f"Search failed: {exc!r}")
            raise

        try:
            self.ledger.commit(token, query_id)
        except BaseException:
            self._fail_if_pending(query_id, "Search failed: billing could not be settled")
            raise

        self.query_log.succeed(query_id, result.summary, result.data, token.amount)
        self.credentials.record_usage(integration.id)
        return InvocationResult(
            query_id=query_id,
            status=QueryStatus.SUCCESS,
            result_summary=result.summary,
            credits_charged=token.amount,
            message=result.summary,
            full_result=result.data,
            attempts=attempt,
        )

    def _call_provider(
        self,
        adapter: ProviderAdapter,
        operation_tag: str,
        credential: str,
        payload: Mapping[str, Any],
    ):
        # One thread per call: a hung provider never delays another lookup.
        # The adapter's own HTTP timeout ends abandoned calls.
        timeout = self.config.gateway.timeout_seconds
        future: "Future[NormalizedResult]" = Future()
        future.set_running_or_notify_cancel()

        def call() -> None:
            try:
                future.set_result(adapter.invoke(operation_tag, credential, payload))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=call, name=f"provider-call-{operation_tag}", daemon=True).start()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise ProviderError(ErrorKind.TIMEOUT, f"Provider did not respond within {timeout:g}s")
