"""
Billing Provider Base Class
===========================

Capability interface over the payment processors. Callers only see
SubscriptionSnapshot and ProviderError; which processor sits behind an
adapter shows up only as the ``supports_in_place_plan_swap`` flag.

- Shape A (Stripe): native subscription object, plans can be swapped or
  scheduled in place.
- Shape B (MercadoPago pre-approval): no in-place swap; changing plan means
  cancelling the pre-approval and checking out again.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models import BillingCycle, BillingProviderName, CustomerRef, Plan, SubscriptionSnapshot


class ProviderError(Exception):
    """A provider call failed (network, API error, or missing provider config)."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: Optional[int] = None,
        original_error: Exception = None
    ):
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.original_error = original_error
        super().__init__(self.message)


class PlanSwapNotSupportedError(ProviderError):
    """Raised by Shape B adapters for in-place plan changes."""
    pass


class BillingProvider(ABC):
    """
    Abstract base class for payment providers.

    Implementations must:
    - Map their status vocabulary onto ProviderSubscriptionStatus
    - Return timezone-aware period ends
    - Raise ProviderError for every failed call
    """

    name: BillingProviderName
    supports_in_place_plan_swap: bool = False

    @abstractmethod
    async def create_subscription(
        self,
        customer: CustomerRef,
        plan: Plan,
        cycle: BillingCycle
    ) -> SubscriptionSnapshot:
        """
        Create a recurring subscription for ``plan``.

        The returned snapshot is usually not active yet; entitlement only
        changes when the provider confirms payment via webhook.

        Raises:
            ProviderError: On any provider failure
        """
        pass

    @abstractmethod
    async def cancel_subscription(self, external_id: str) -> None:
        """Cancel immediately. Raises ProviderError."""
        pass

    @abstractmethod
    async def retrieve_subscription(self, external_id: str) -> SubscriptionSnapshot:
        """Fetch current provider state. Raises ProviderError."""
        pass

    async def change_plan(
        self,
        external_id: str,
        plan: Plan,
        cycle: BillingCycle
    ) -> SubscriptionSnapshot:
        """Swap the plan of a live subscription, invoicing the prorated difference."""
        raise PlanSwapNotSupportedError(
            f"{self.name.value} cannot change plans in place",
            provider=self.name.value,
        )

    async def schedule_plan_change(
        self,
        external_id: str,
        plan: Plan,
        cycle: BillingCycle,
        effective_at: datetime
    ) -> None:
        """Have the provider switch to ``plan`` at ``effective_at``."""
        raise PlanSwapNotSupportedError(
            f"{self.name.value} cannot schedule plan changes",
            provider=self.name.value,
        )
