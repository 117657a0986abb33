# credit_gateway/demo/seed_demo_data.py

from credit_gateway.storage.db import DEFAULT_DB_PATH
from credit_gateway.storage.repository import GatewayRepository, initialize_schema

# Credentials are placeholders; point the providers section of the
# config at a sandbox before running real lookups.
INTEGRATIONS = [
    ("signzy-phone-prefill", "Phone Prefill V2", "signzy", "5", "demo-signzy-key"),
    ("signzy-rc", "Vehicle RC Search", "signzy", "3", "demo-signzy-key"),
    ("signzy-udyam", "Phone to Udyam", "signzy", "4", "demo-signzy-key"),
    ("signzy-credit-business", "Phone to Credit & Business", "signzy", "6", "demo-signzy-key"),
    ("planapi-upi", "UPI Validation", "planapi", "1.5", "demo-user:demo-password:demo-token"),
    ("planapi-voter", "Voter ID Verification", "planapi", "2", "demo-user:demo-password:demo-token"),
    ("planapi-operator", "Operator & Circle", "planapi", "0.5", "demo-user:demo-password:demo-token"),
    ("deepvue-mobile-rc", "Mobile to Vehicle RC", "deepvue", "4", "demo-secret:demo-client"),
]

PLANS = [
    ("basic", "Basic", ["vehicle_rc_search", "operator_circle"]),
    ("pro", "Pro", [
        "phone_prefill_v2", "vehicle_rc_search", "phone_to_udyam",
        "phone_to_credit_business", "upi_validation", "voter_id_verification",
        "operator_circle", "mobile_to_vehicle_rc",
    ]),
]

OFFICERS = [
    ("officer-001", "Asha Rao", "pro", "100"),
    ("officer-002", "Vikram Shah", "basic", "10"),
    ("officer-003", "Meera Iyer", None, "25"),
]


def seed_demo_data(db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert demo plans, officers and integrations that are not present yet.

    Returns:
        Number of records created
    """
    initialize_schema(db_path)
    repository = GatewayRepository(db_path)
    created = 0

    for plan_id, name, tags in PLANS:
        if repository.get_rate_plan(plan_id) is None:
            repository.create_rate_plan(plan_id, name, tags)
            created += 1
    for officer_id, name, plan_id, credits in OFFICERS:
        if repository.get_officer(officer_id) is None:
            repository.create_officer(officer_id, name, plan_id=plan_id, total_credits=credits)
            created += 1
    for integration_id, name, provider_tag, cost, credential in INTEGRATIONS:
        if repository.get_integration(integration_id) is None:
            repository.register_integration(integration_id, name, provider_tag, cost, credential)
            created += 1
    return created


if __name__ == "__main__":
    count = seed_demo_data()
    print(f"Demo data inserted ({count} records)")
