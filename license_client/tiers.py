"""
Tier -> feature set table.

``None`` caps mean unlimited. Tiers not in the table resolve to FREE.
"""

import copy
from enum import Enum
from typing import Any, Dict, List, Optional


class Tier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    TEAM = "TEAM"
    ENTERPRISE = "ENTERPRISE"


_PRO_LANGUAGES = ["npm", "python", "rust", "ruby"]

_PRO_FLAGS = {
    "frameworkGrouping": True,
    "smartTestStrategy": True,
    "typescriptProtection": True,
    "securityScanning": True,
    "projectTypeDetection": True,
    "advancedSecurity": True,
}

_TEAM_FLAGS = {
    "perSeatLicensing": True,
    "sharedOrgQuota": True,
    "teamPolicies": True,
    "roleBasedAccess": True,
    "teamAuditLog": True,
    "slackAlerts": True,
    "customSchedules": True,
    "advancedWorkflows": True,
    "notifications": True,
    "multiRepo": True,
}

_ENTERPRISE_FLAGS = {
    "ssoIntegration": True,
    "scimReady": True,
    "customRiskPatterns": True,
    "customDependencyPolicies": True,
    "webhookBilling": True,
    "auditLogsExport": True,
    "dataRetentionControls": True,
    "compliancePack": True,
    "dedicatedTAM": True,
    "incidentSLA": True,
    "onPremOption": True,
}

_UNLIMITED = {
    "maxPrivateRepos": None,
    "maxDependencyPRsPerMonth": None,
    "maxPrePushRunsPerMonth": None,
}

FEATURES: Dict[Tier, Dict[str, Any]] = {
    Tier.FREE: {
        "maxPrivateRepos": 1,
        "maxDependencyPRsPerMonth": 10,
        "maxPrePushRunsPerMonth": 50,
        "dependencyMonitoring": "basic",
        "languages": ["npm"],
        "frameworkGrouping": False,
        "smartTestStrategy": False,
        "typescriptProtection": False,
        "securityScanning": False,
        "projectTypeDetection": False,
        "customSchedules": False,
        "advancedWorkflows": False,
        "notifications": False,
        "multiRepo": False,
    },
    Tier.PRO: {
        **_UNLIMITED,
        "dependencyMonitoring": "premium",
        "languages": list(_PRO_LANGUAGES),
        **_PRO_FLAGS,
        "customSchedules": False,
        "advancedWorkflows": False,
        "notifications": False,
        "multiRepo": False,
    },
    Tier.TEAM: {
        "minSeats": 5,
        **_UNLIMITED,
        "dependencyMonitoring": "premium",
        "languages": list(_PRO_LANGUAGES),
        **_PRO_FLAGS,
        **_TEAM_FLAGS,
    },
    Tier.ENTERPRISE: {
        "annualOnly": True,
        "onboardingFee": 499,
        **_UNLIMITED,
        "dependencyMonitoring": "enterprise",
        "languages": _PRO_LANGUAGES + ["go", "java"],
        **_PRO_FLAGS,
        **_TEAM_FLAGS,
        **_ENTERPRISE_FLAGS,
    },
}


def resolve_tier(value: Optional[str]) -> Tier:
    """Map a tier string to a Tier; anything unknown is FREE."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().upper())
    except ValueError:
        return Tier.FREE


def features_for_tier(tier: Optional[str]) -> Dict[str, Any]:
    return copy.deepcopy(FEATURES[resolve_tier(tier)])


def has_feature(tier: Optional[str], feature_name: str) -> bool:
    """True only for enabled boolean flags and non-empty values."""
    value = FEATURES[resolve_tier(tier)].get(feature_name, False)
    return bool(value)


def dependency_monitoring_level(tier: Optional[str]) -> str:
    return FEATURES[resolve_tier(tier)]["dependencyMonitoring"]


def supported_languages(tier: Optional[str]) -> List[str]:
    return list(FEATURES[resolve_tier(tier)]["languages"])
