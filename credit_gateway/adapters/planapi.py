"""
PlanAPI adapter: UPI, e-KYC and telecom lookups.

The integration credential has the form ``ApiUserID:ApiPassword:TokenID``.
The e-KYC endpoints report their own outcome in a ``status``/``Status``
field; anything but success means the provider found no record.
"""

from typing import Any, Dict, Mapping, Tuple

from .base import NormalizedResult, Operation, ProviderAdapter, digits, require
from credit_gateway.core.errors import ErrorKind, ProviderError

API_MODE = "1"


def parse_credential(credential: str) -> Tuple[str, str, str]:
    """Split a PlanAPI credential into user id, password and token."""
    parts = (credential or "").split(":")
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise ProviderError(
            ErrorKind.UNAUTHORIZED,
            "Invalid API key format: expected ApiUserID:ApiPassword:TokenID",
        )
    user_id, password, token = (part.strip() for part in parts)
    return user_id, password, token


def _check_status(body: Dict[str, Any]) -> None:
    status = body.get("status", body.get("Status"))
    if status is None:
        raise ProviderError(ErrorKind.MALFORMED, "Response carries no status")
    if str(status).lower() not in ("success", "1", "true"):
        message = body.get("msg") or body.get("Message") or body.get("message") or "No record found"
        raise ProviderError(ErrorKind.NOT_FOUND, str(message))


def _ekyc_result(label: str, key: str):
    def parse(body: Dict[str, Any]) -> NormalizedResult:
        _check_status(body)
        return NormalizedResult(summary=f"{label} for {body.get(key, 'input')}: Successful", data=body)
    return parse


def _upi_validation_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {
        "Name": require(payload, "name"),
        "UpiId": require(payload, "upi_id"),
        "ApiMode": API_MODE,
    }}


def _upi_info_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {"UpiId": require(payload, "upi_id"), "ApiMode": API_MODE}}


def _voter_id_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    body = {"EPICNUMBER": require(payload, "epic_number").upper(), "ApiMode": API_MODE}
    if payload.get("state_id"):
        body["StateId"] = str(payload["state_id"])
    return {"json": body}


def _mca_cin_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {"CIN": require(payload, "cin").upper(), "ApiMode": API_MODE}}


def _recharge_status_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {
        "Operator_Code": require(payload, "operator_code").upper(),
        "Mobile_No": digits(require(payload, "mobile_number")),
    }}


def _recharge_status_result(body: Dict[str, Any]) -> NormalizedResult:
    _check_status(body)
    return NormalizedResult(
        summary=(
            f"Last recharge: {body.get('Last_Recharge_Date', 'N/A')} - "
            f"{body.get('Last_Recharge_Amount', 'N/A')}"
        ),
        data=body,
    )


def _operator_circle_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"params": {"Mobileno": digits(require(payload, "mobile_number"))}}


def _operator_circle_result(body: Dict[str, Any]) -> NormalizedResult:
    operator = body.get("operator") or body.get("Operator")
    if not operator:
        raise ProviderError(ErrorKind.NOT_FOUND, "Operator could not be determined")
    circle = body.get("circle") or body.get("Circle") or "Unknown circle"
    return NormalizedResult(summary=f"Operator {operator}, circle {circle}", data=body)


class PlanApiAdapter(ProviderAdapter):
    """Financial and telecom e-KYC lookups served by PlanAPI."""

    provider_tag = "planapi"
    default_base_url = "https://planapi.in"
    operations = {
        "upi_validation": Operation(
            "POST", "/api/Ekyc/UPI_Validate",
            _upi_validation_request, _ekyc_result("UPI validation", "UpiId"),
        ),
        "upi_info": Operation(
            "POST", "/api/Ekyc/VPA_Info",
            _upi_info_request, _ekyc_result("UPI info", "UpiId"),
        ),
        "voter_id_verification": Operation(
            "POST", "/api/Ekyc/VoterIdVerification2",
            _voter_id_request, _ekyc_result("Voter ID verification", "EPICNUMBER"),
        ),
        "mca_cin_search": Operation(
            "POST", "/api/Ekyc/MCACinSearch",
            _mca_cin_request, _ekyc_result("MCA CIN search", "CIN"),
        ),
        "recharge_status": Operation(
            "POST", "/api/Mobile/CheckLastRecharge",
            _recharge_status_request, _recharge_status_result,
        ),
        "operator_circle": Operation(
            "GET", "/api/Mobile/OperatorFetchNew",
            _operator_circle_request, _operator_circle_result,
            credential_in_query=True,
        ),
    }

    def auth_headers(self, credential: str, payload: Mapping[str, Any]) -> Dict[str, str]:
        user_id, password, token = parse_credential(credential)
        return {"ApiUserID": user_id, "ApiPassword": password, "TokenID": token}

    def auth_params(self, credential: str) -> Dict[str, str]:
        user_id, password, _ = parse_credential(credential)
        return {"ApiUserID": user_id, "ApiPassword": password}
