from decimal import Decimal
from enum import Enum

# Infrastructure Constants
AWS_SUPPORTED_REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "af-south-1",
    "ap-east-1",
    "ap-south-1",
    "ap-northeast-3",
    "ap-northeast-2",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ca-central-1",
    "eu-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-south-1",
    "eu-west-3",
    "eu-north-1",
    "me-south-1",
    "sa-east-1",
]

HOURS_PER_MONTH = Decimal("730")


class PricingTier(str, Enum):
    """Subscription tiers; they decide the expensive-resource alert cutoffs."""

    FREE = "free"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class ResourceType(str, Enum):
    COMPUTE = "compute"
    DATABASE = "database"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Channel(str, Enum):
    DASHBOARD = "dashboard"
    EMAIL = "email"
    CHAT = "chat"
    SMS = "sms"


def normalize_tier(value: object) -> PricingTier:
    """Map a stored tier string onto PricingTier, defaulting to FREE."""
    if isinstance(value, PricingTier):
        return value
    try:
        return PricingTier(str(value or "").strip().lower())
    except ValueError:
        return PricingTier.FREE
