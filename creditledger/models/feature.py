"""
creditledger/models/feature.py

Metered features of the product. The set is closed: every feature has a
pair of columns on the subscription grant table and may be sold as an add-on.
"""

from enum import Enum
from typing import Dict, Tuple


class Feature(str, Enum):
    OPTIMIZATION = "optimization"
    SCORE_CHECK = "score_check"
    GUIDED_BUILD = "guided_build"
    LINKEDIN_MESSAGES = "linkedin_messages"


# feature -> (total column, used column) on subscription_grants
FEATURE_GRANT_COLUMNS: Dict[Feature, Tuple[str, str]] = {
    Feature.OPTIMIZATION: ("optimizations_total", "optimizations_used"),
    Feature.SCORE_CHECK: ("score_checks_total", "score_checks_used"),
    Feature.GUIDED_BUILD: ("guided_builds_total", "guided_builds_used"),
    Feature.LINKEDIN_MESSAGES: ("linkedin_messages_total", "linkedin_messages_used"),
}


def parse_feature(value) -> Feature:
    """Coerce a raw feature key into a Feature.

    Raises:
        ValueError: if the key is not one of the known features
    """
    if isinstance(value, Feature):
        return value
    try:
        return Feature(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown feature: {value}") from None
