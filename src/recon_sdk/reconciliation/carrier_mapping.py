"""Mapping of policy types to the insurance carriers that underwrite them."""

from typing import Dict, List

UNKNOWN_CARRIER = "Unknown"

POLICY_CARRIER_MAPPINGS: Dict[str, str] = {
    "Accident": "SunLife",
    "Critical Illness": "SunLife",
    "Dental": "SunLife",
    "Dental Insurance": "SunLife",
    "Life - Dependent": "SunLife",
    "Voluntary Life & AD&D": "SunLife",
    "Short Term Disability": "SunLife",
    "Long Term Disability": "SunLife",
    "Long Term Care": "Unum",
    "Vision": "Guardian",
    "Vision Insurance": "Guardian",
    "Excess Disability": "Hanleigh",
    "Excess Disability Insurance": "Hanleigh",
    "Identity Theft Protection": "SontIQ",
    "Health Cost Sharing": "Sedera",
    "Sedera Health Cost Sharing": "Sedera",
    "Telehealth": "Recuro",
}


def get_carrier_by_policy_type(policy_type: str) -> str:
    """Return the carrier of a policy type, or "Unknown" when unmapped."""
    return POLICY_CARRIER_MAPPINGS.get((policy_type or "").strip(), UNKNOWN_CARRIER)


def is_policy_type_supported(policy_type: str) -> bool:
    return (policy_type or "").strip() in POLICY_CARRIER_MAPPINGS


def get_all_carriers() -> List[str]:
    """Return every mapped carrier, sorted."""
    return sorted(set(POLICY_CARRIER_MAPPINGS.values()))


def get_policy_types_by_carrier(carrier: str) -> List[str]:
    return [policy_type for policy_type, mapped in POLICY_CARRIER_MAPPINGS.items() if mapped == carrier]
