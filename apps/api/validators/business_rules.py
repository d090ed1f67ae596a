"""Business rule configuration for the pharmacy workflow"""
import os
from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(f"PHARMACY_{name}", str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(f"PHARMACY_{name}", str(default)))


class BusinessRules(BaseModel):
    """Business rules configuration"""
    # Alerting rules
    LOW_STOCK_DEBOUNCE_HOURS: int = _env_int("LOW_STOCK_DEBOUNCE_HOURS", 24)
    EXPIRY_HORIZON_DAYS: int = _env_int("EXPIRY_HORIZON_DAYS", 30)

    # Bill rules
    BILL_EXPIRY_DAYS: int = _env_int("BILL_EXPIRY_DAYS", 7)

    # Payment rules
    PAYMENT_TIMEOUT_SECONDS: float = _env_float("PAYMENT_TIMEOUT_SECONDS", 10.0)
    MIN_CARD_NUMBER_LENGTH: int = 12
    MAX_CARD_NUMBER_LENGTH: int = 19
    CURRENCY: str = os.getenv("PHARMACY_CURRENCY", "INR")

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: int = _env_int("SCHEDULER_INTERVAL_SECONDS", 3600)


# Global instance
business_rules = BusinessRules()


def get_business_rules() -> BusinessRules:
    """Get current business rules"""
    return business_rules

