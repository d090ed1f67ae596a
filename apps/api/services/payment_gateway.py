"""
Payment collaborator client.

Posts a charge request to the configured payment service
(PAYMENT_GATEWAY_URL). Without a configured URL charges are simulated and
always approved, which keeps local development and tests self-contained.

Every call is bounded by PAYMENT_TIMEOUT_SECONDS; a timeout counts as a
rejected payment. Charges are never retried here since that risks a double
charge.
"""
import os
import uuid
import logging
from typing import Mapping, Optional

import httpx
from pydantic import BaseModel

from services.errors import ExternalServiceError, ValidationError
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "")
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY", "")

REQUIRED_CARD_FIELDS = ("card_holder", "card_number", "expiry", "cvv")


class PaymentResult(BaseModel):
    """Outcome reported by the payment collaborator"""
    success: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None


def validate_card_details(details: Mapping[str, Optional[str]]) -> None:
    """Presence and length checks only; real validation belongs to the gateway"""
    rules = get_business_rules()
    missing = [name for name in REQUIRED_CARD_FIELDS if not str(details.get(name) or "").strip()]
    if missing:
        raise ValidationError(f"Missing payment details: {', '.join(missing)}")

    digits = str(details["card_number"]).replace(" ", "").replace("-", "")
    if not digits.isdigit() or not (rules.MIN_CARD_NUMBER_LENGTH <= len(digits) <= rules.MAX_CARD_NUMBER_LENGTH):
        raise ValidationError(
            f"Card number must be {rules.MIN_CARD_NUMBER_LENGTH}-{rules.MAX_CARD_NUMBER_LENGTH} digits"
        )


class PaymentGateway:
    def __init__(self, base_url: str = PAYMENT_GATEWAY_URL, api_key: str = PAYMENT_GATEWAY_API_KEY,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else get_business_rules().PAYMENT_TIMEOUT_SECONDS
        self.transport = transport

    def _is_configured(self) -> bool:
        return bool(self.base_url)

    def charge(self, amount: float, details: Mapping[str, Optional[str]], reference: str) -> str:
        """
        Charge amount against the card details.

        Returns:
            Transaction id issued by the collaborator

        Raises:
            ExternalServiceError: declined, unreachable or timed out
        """
        card_number = str(details["card_number"]).replace(" ", "").replace("-", "")

        if not self._is_configured():
            transaction_id = f"SIM-{uuid.uuid4().hex[:12].upper()}"
            logger.info(f"[SIMULATED payment] {reference}: {amount:.2f} approved as {transaction_id}")
            return transaction_id

        payload = {
            "amount": round(amount, 2),
            "currency": get_business_rules().CURRENCY,
            "reference": reference,
            "card": {
                "holder": details["card_holder"],
                "number": card_number,
                "expiry": details["expiry"],
                "cvv": details["cvv"],
            },
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/charges", json=payload, headers=headers)
                response.raise_for_status()
                result = PaymentResult(**response.json())
        except httpx.TimeoutException:
            logger.error(f"Payment service timed out for {reference}")
            raise ExternalServiceError("Payment service timed out")
        except httpx.HTTPStatusError as e:
            logger.error(f"Payment service returned {e.response.status_code} for {reference}")
            raise ExternalServiceError("Payment was declined by the payment service")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Payment service error for {reference}: {e}")
            raise ExternalServiceError("Payment service unavailable")

        if not result.success or not result.transaction_id:
            logger.warning(f"Payment for {reference} rejected: {result.message}")
            raise ExternalServiceError(result.message or "Payment was declined")

        logger.info(f"Payment for {reference} approved as {result.transaction_id} (card ending {card_number[-4:]})")
        return result.transaction_id


# Singleton instance
payment_gateway = PaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return payment_gateway
