"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, profile_id: str, phone: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the contractor profile.

        Args:
            profile_id: Internal contractor profile ID
            phone: Contact phone (optional)
            name: Company name (optional)

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a checkout session for a subscription.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify the webhook signature, then parse the body.

        The body is never parsed before the signature checks out.

        Returns:
            The event as a plain dict (id, type, created, data.object)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...
