"""Plan tiers and the features each one unlocks."""
from typing import Dict

FREE = "free"
PRO = "pro"

PLAN_FEATURES = {
    FREE: {
        "customTheme": False,
        "hideBranding": False,
        "captcha": False,
        "unlimitedResponses": False,
    },
    PRO: {
        "customTheme": True,
        "hideBranding": True,
        "captcha": True,
        "unlimitedResponses": True,
    },
}


def normalize_plan(plan) -> str:
    value = str(plan or FREE).strip().lower()
    return value if value in PLAN_FEATURES else FREE


def has_feature(plan, feature: str) -> bool:
    return PLAN_FEATURES[normalize_plan(plan)].get(feature, False)


def features_for(plan) -> Dict[str, bool]:
    return dict(PLAN_FEATURES[normalize_plan(plan)])
