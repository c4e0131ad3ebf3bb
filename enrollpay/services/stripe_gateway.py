"""
Thin wrapper around the Stripe API calls the checkout flow needs.

Keeps the stripe module out of the orchestration code so tests can swap in
a fake gateway through the API dependency.
"""
import logging
from typing import Any, Dict, NamedTuple, Optional

import stripe

from enrollpay.core.config import settings
from enrollpay.core.errors import ConfigurationError, UpstreamProcessorError

logger = logging.getLogger(__name__)


class HostedSession(NamedTuple):
    id: str
    url: str


class StripeGateway:
    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        return self.api_key

    def find_or_create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Reuse the first Stripe customer with this email, else create one."""
        api_key = self._require_key()
        try:
            existing = stripe.Customer.list(email=email, limit=1, api_key=api_key)
            if existing.data:
                return existing.data[0].id

            params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
            if name:
                params["name"] = name
            if phone:
                params["phone"] = phone
            customer = stripe.Customer.create(api_key=api_key, **params)
            logger.info("[CHECKOUT] Created Stripe customer %s", customer.id)
            return customer.id
        except stripe.StripeError as e:
            logger.error("[CHECKOUT] Stripe customer lookup/create failed: %s", e)
            raise UpstreamProcessorError() from e

    def create_checkout_session(self, **params: Any) -> HostedSession:
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("[CHECKOUT] Stripe checkout session create failed: %s", e)
            raise UpstreamProcessorError() from e
        return HostedSession(id=session.id, url=session.url)
