"""
Deepvue adapter: mobile-to-vehicle record lookups.

The credential has the form ``client_secret:client_id``. Each lookup
first exchanges it for a bearer token at /v1/authorize.
"""

from typing import Any, Dict, Mapping, Tuple

from .base import NormalizedResult, Operation, ProviderAdapter, require
from credit_gateway.core.errors import ErrorKind, ProviderError


def parse_credential(credential: str) -> Tuple[str, str]:
    """Split a Deepvue credential into client secret and client id."""
    parts = (credential or "").split(":")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        raise ProviderError(
            ErrorKind.UNAUTHORIZED,
            "Invalid API key format: expected client_secret:client_id",
        )
    return parts[0].strip(), parts[1].strip()


def _mobile_to_rc_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    mobile = require(payload, "mobile_number")
    if not (mobile.isdigit() and len(mobile) == 10):
        raise ProviderError(ErrorKind.MALFORMED, "mobile_number must be a 10-digit number")
    return {"params": {"mobile_number": mobile}}


def _mobile_to_rc_result(body: Dict[str, Any]) -> NormalizedResult:
    data = body.get("data")
    if not data:
        raise ProviderError(ErrorKind.NOT_FOUND, body.get("message") or "No vehicle linked to this number")
    return NormalizedResult(
        summary=f"Mobile to Vehicle RC: {body.get('message') or 'Success'}",
        data=body,
    )


class DeepvueAdapter(ProviderAdapter):
    """Vehicle-record lookups served by Deepvue."""

    provider_tag = "deepvue"
    default_base_url = "https://production.deepvue.tech"
    operations = {
        "mobile_to_vehicle_rc": Operation(
            "GET", "/v1/mobile-intelligence/mobile-to-vehicle-rc",
            _mobile_to_rc_request, _mobile_to_rc_result,
        ),
    }

    def access_token(self, client_id: str, client_secret: str) -> str:
        body = self.send(
            "POST",
            "/v1/authorize",
            data={"client_id": client_id, "client_secret": client_secret},
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError(ErrorKind.UNAUTHORIZED, "Access token not found in authentication response")
        return token

    def auth_headers(self, credential: str, payload: Mapping[str, Any]) -> Dict[str, str]:
        client_secret, client_id = parse_credential(credential)
        token = self.access_token(client_id, client_secret)
        return {"Authorization": f"Bearer {token}", "x-api-key": client_secret}
