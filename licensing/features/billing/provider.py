"""
Billing provider protocol.

Defines the read-only interface the licensing core needs from the billing
system. Business logic depends on this protocol, not on the Stripe SDK.
"""
from typing import Any, Dict, List, Optional, Protocol, Union

from licensing.features.entitlements.models import Plan


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must distinguish "nothing found" (a None result) from
    "could not ask" (BillingUnavailableError).
    """

    def find_plan(self, email: str) -> Optional[Plan]:
        """
        Resolve the best plan currently owned by an email.

        Looks at active subscriptions, completed checkout sessions and
        succeeded one-time payments.

        Returns:
            The resolved plan, or None when the provider has no purchase on record

        Raises:
            BillingUnavailableError: transport, auth, rate-limit or API failure
        """
        ...

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            BillingWebhookError: signature or payload invalid
        """
        ...

    def get_customer_email(self, customer: Union[str, Dict[str, Any], None]) -> Optional[str]:
        """
        Normalized email for a customer id or expanded customer object.

        Returns None for deleted or unknown customers.

        Raises:
            BillingUnavailableError: the lookup could not be completed
        """
        ...

    def list_line_item_prices(self, session_id: str) -> List[str]:
        """
        Price ids on a checkout session's line items.

        Raises:
            BillingUnavailableError: the lookup could not be completed
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingUnavailableError(BillingProviderError):
    """The provider could not be reached or refused the call. Never means "no purchase"."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook signature or payload errors."""
    pass
