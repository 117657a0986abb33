"""
Signzy adapter: phone KYC, vehicle records and business lookups.

The integration credential is a single API key sent verbatim in the
Authorization header.
"""

import time
import uuid
from typing import Any, Dict, Mapping

from .base import NormalizedResult, Operation, ProviderAdapter, digits, require, section
from credit_gateway.core.errors import ErrorKind, ProviderError


def _phone_prefill_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    body = {
        "mobileNumber": digits(require(payload, "mobile_number")),
        "consent": {
            "consentFlag": True,
            "consentTimestamp": int(time.time()),
            "consentIpAddress": payload.get("consent_ip", "127.0.0.1"),
            "consentMessageId": f"CM_{uuid.uuid4().hex}",
        },
    }
    if payload.get("full_name"):
        body["fullName"] = str(payload["full_name"]).strip()
    return {"json": body}


def _phone_prefill_result(body: Dict[str, Any]) -> NormalizedResult:
    response = body.get("response")
    if not isinstance(response, dict):
        raise ProviderError(ErrorKind.NOT_FOUND, "No phone prefill data found")
    name = section(response, "name").get("fullName") or "Unknown"
    return NormalizedResult(summary=f"Found data for {name}", data=response)


def _vehicle_rc_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {
        "vehicleNumber": require(payload, "vehicle_number").upper(),
        "splitAddress": True,
    }}


def _vehicle_rc_result(body: Dict[str, Any]) -> NormalizedResult:
    result = body.get("result")
    if not isinstance(result, dict) or not result:
        raise ProviderError(ErrorKind.NOT_FOUND, "No vehicle data found")
    return NormalizedResult(
        summary=f"Vehicle found: {result.get('model', 'Unknown')} - {result.get('owner', 'Unknown')}",
        data=result,
    )


def _udyam_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {"phone": require(payload, "phone")}}


def _udyam_result(body: Dict[str, Any]) -> NormalizedResult:
    results = body.get("result")
    if not isinstance(results, list) or not results:
        raise ProviderError(ErrorKind.NOT_FOUND, "No Udyam registration found")
    first = results[0] if isinstance(results[0], dict) else {}
    general = section(section(first, "result"), "generalInfo")
    number = general.get("udyamRegistrationNumber", "N/A")
    return NormalizedResult(
        summary=f"Udyam details found: {number}",
        data={"registrations": results},
    )


def _credit_business_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"json": {
        "phoneNumber": digits(require(payload, "phone_number")),
        "name": require(payload, "name").upper(),
        "nddSearchType": "entity",
    }}


def _credit_business_result(body: Dict[str, Any]) -> NormalizedResult:
    result = body.get("result")
    if not isinstance(result, dict) or not result:
        raise ProviderError(ErrorKind.NOT_FOUND, "No credit or business details found")
    return NormalizedResult(summary=f"Found data for {result.get('name') or 'Unknown'}", data=result)


class SignzyAdapter(ProviderAdapter):
    """KYC and vehicle-record lookups served by Signzy."""

    provider_tag = "signzy"
    default_base_url = "https://api.signzy.app"
    operations = {
        "phone_prefill_v2": Operation(
            "POST", "/api/v3/phonekyc/phone-prefill-v2",
            _phone_prefill_request, _phone_prefill_result,
        ),
        "vehicle_rc_search": Operation(
            "POST", "/api/v3/vehicle/detailedsearches",
            _vehicle_rc_request, _vehicle_rc_result,
        ),
        "phone_to_udyam": Operation(
            "POST", "/api/v3/PhoneOrPanToUdyamDetails",
            _udyam_request, _udyam_result,
        ),
        "phone_to_credit_business": Operation(
            "POST", "/api/v3/nca/phoneToCreditAndBusinessDetails",
            _credit_business_request, _credit_business_result,
        ),
    }

    def auth_headers(self, credential: str, payload: Mapping[str, Any]) -> Dict[str, str]:
        if not credential or not credential.strip():
            raise ProviderError(ErrorKind.UNAUTHORIZED, "Signzy API key is not configured")
        headers = {"Authorization": credential.strip()}
        if payload.get("client_reference"):
            headers["x-client-unique-id"] = str(payload["client_reference"])
        return headers
