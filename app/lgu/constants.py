"""
Central constants for the LGU portal: the built-in service catalog and the
enumerations shared by transactions, settings and accounts.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass


@dataclass(frozen=True)
class ServiceDefinition:
    id: str
    name: str
    requires_approval: bool
    reference_prefix: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "requiresApproval": self.requires_approval,
            "referencePrefix": self.reference_prefix,
        }


SERVICES: tuple[ServiceDefinition, ...] = (
    ServiceDefinition("business-permits", "Business Permits", True, "BSP"),
    ServiceDefinition("building-permits", "Building Permits", True, "BLD"),
    ServiceDefinition("occupancy-permits", "Occupancy Permits", True, "OCC"),
    ServiceDefinition("property-taxes", "Property Taxes", False, "PRT"),
    ServiceDefinition("market-fees", "Market Fees", False, "MKF"),
    ServiceDefinition("traffic-fines", "Traffic Fines", False, "TRF"),
    ServiceDefinition("truck-permit-fees", "Truck Permit Fees", True, "TPF"),
    ServiceDefinition("rental-fees", "Rental Fees", False, "RNT"),
)

SERVICES_BY_ID: dict[str, ServiceDefinition] = {svc.id: svc for svc in SERVICES}
SERVICE_IDS = frozenset(SERVICES_BY_ID)

# Transactions
TRANSACTION_STATUSES = ("pending", "awaiting_payment", "paid", "refunded", "failed", "completed")
SUCCESS_STATUSES = frozenset({"paid", "completed"})
IMMUTABLE_STATUSES = frozenset({"paid", "refunded", "completed"})
BREAKDOWN_CODES = ("base", "tax", "convenience_fee", "processing_fee", "discount", "other")
PAYMENT_CHANNELS = ("online_wallet", "online_banking", "qrph", "card", "other")
PAYMENT_PROVIDER = "paymongo"

# Accounts
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super_admin"
USER_ROLES = (ROLE_USER, ROLE_ADMIN, ROLE_SUPER_ADMIN)
ADMIN_ROLES = frozenset({ROLE_ADMIN, ROLE_SUPER_ADMIN})
ACCOUNT_TYPES = ("individual", "business")
GENDERS = ("male", "female")

# Permission keys checked by route guards
PERM_MANAGE_SETTINGS = "manage_settings"
PERM_PAYMENT_SETTINGS = "payment_management_setting"
PERM_APPLICATION_SETTINGS = "application_management_setting"

# Verification codes
CODE_EMAIL_VERIFICATION = "email_verification"
CODE_PASSWORD_RESET = "password_reset"
VERIFICATION_CODE_TTL_MINUTES = 10

# Application submissions
SUBMISSION_STATUSES = ("draft", "submitted")
ADMIN_STATUSES = ("pending", "reviewing", "rejected", "approved")


def is_valid_service_id(value: object) -> bool:
    return isinstance(value, str) and value in SERVICE_IDS


def normalize_to_service_id(raw: object) -> str | None:
    """Map "Business_Permits " style input onto a catalog id, or None."""
    if not isinstance(raw, str):
        return None
    candidate = raw.strip().lower().replace("_", "-")
    return candidate if candidate in SERVICE_IDS else None


def get_service(service_id: str | None) -> ServiceDefinition | None:
    if not service_id:
        return None
    return SERVICES_BY_ID.get(service_id)


def service_aliases(keys: list[str] | tuple[str, ...] | None) -> tuple[list[str], list[str]]:
    """
    Expand scope keys into (service ids, service display names).

    Valid keys contribute both their id and canonical name; anything else is kept
    as a raw display name so legacy rows that only stored a name still match.
    """
    ids: list[str] = []
    names: list[str] = []
    for raw in keys or []:
        if not isinstance(raw, str) or not raw.strip():
            continue
        sid = normalize_to_service_id(raw)
        if sid:
            if sid not in ids:
                ids.append(sid)
            name = SERVICES_BY_ID[sid].name
            if name not in names:
                names.append(name)
        else:
            trimmed = raw.strip()
            if trimmed not in names:
                names.append(trimmed)
    return ids, names


def build_service_reference(service_id: str | None, length: int = 13) -> str:
    """PREFIX-<digits> with `length` random digits (never fewer than 6)."""
    svc = get_service(service_id)
    prefix = svc.reference_prefix if svc else "GEN"
    digits = max(6, int(length))
    return f"{prefix}-" + "".join(secrets.choice("0123456789") for _ in range(digits))
