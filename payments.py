import logging
from typing import Any, Dict, Optional

import stripe

from errors import PaymentProviderError

logger = logging.getLogger(__name__)


class StripeGateway:
    """Creates Stripe PaymentIntents for membership purchases."""

    def __init__(self, api_key: str, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def create_payment_intent(self, amount: float, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=int(round(amount * 100)),  # cents
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
                capture_method="automatic",
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            logger.exception("Stripe payment intent error")
            raise PaymentProviderError(str(e.user_message or e))
        return {"client_secret": intent.client_secret, "id": intent.id}
