"""
Plan authorization.

Decides whether an officer may invoke an operation. The check reads
only local records, so it runs before any credential lookup, credit
reservation or network call.
"""

from typing import Optional

from .errors import AuthorizationDenied
from credit_gateway.storage.models import Officer, OfficerStatus
from credit_gateway.storage.repository import GatewayRepository


class PlanAuthorization:
    """Maps an officer's rate plan to the operations they may invoke.

    Officers without a plan have no PRO access.
    """

    def __init__(self, repository: GatewayRepository):
        self.repository = repository

    def denial_reason(self, officer: Optional[Officer], operation_tag: str) -> Optional[str]:
        """Explain why the officer may not run the operation, or None if allowed."""
        if officer is None:
            return "Officer not found"
        if officer.status != OfficerStatus.ACTIVE:
            return f"Officer account is {officer.status.value.lower()}"
        if not officer.plan_id:
            return "No rate plan assigned; PRO lookups are not available"
        plan = self.repository.get_rate_plan(officer.plan_id)
        if plan is None:
            return f"Rate plan '{officer.plan_id}' does not exist"
        if operation_tag not in plan.allowed_operation_tags:
            return f"Operation '{operation_tag}' is not included in plan '{plan.name}'"
        return None

    def is_authorized(self, officer: Optional[Officer], operation_tag: str) -> bool:
        return self.denial_reason(officer, operation_tag) is None

    def check(self, officer: Optional[Officer], operation_tag: str) -> None:
        """Raise AuthorizationDenied unless the officer may run the operation."""
        reason = self.denial_reason(officer, operation_tag)
        if reason is not None:
            raise AuthorizationDenied(reason)
