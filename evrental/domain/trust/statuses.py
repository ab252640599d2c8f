from enum import Enum


class TrustChangeType(str, Enum):
    INITIAL = "INITIAL"
    BONUS = "BONUS"
    PENALTY = "PENALTY"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
