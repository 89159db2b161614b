"""Resolve the adapter responsible for a workspace's subscription."""
import logging
from typing import Dict, Optional, Union

from models import BillingProviderName, WorkspaceBilling
from services.providers.base import BillingProvider
from services.providers.mercadopago_provider import MercadoPagoProvider
from services.providers.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)

_PROVIDERS: Dict[BillingProviderName, BillingProvider] = {
    BillingProviderName.STRIPE: StripeProvider(),
    BillingProviderName.MERCADOPAGO: MercadoPagoProvider(),
}


def get_provider(name: Union[BillingProviderName, str]) -> BillingProvider:
    return _PROVIDERS[BillingProviderName(name)]


def provider_for_workspace(workspace: WorkspaceBilling) -> Optional[BillingProvider]:
    """Adapter for the workspace's subscription, or None when it has none.

    Rows written before ``billing_provider`` existed are resolved from the
    subscription id: Stripe ids start with ``sub_``.
    """
    if workspace.billing_provider:
        return get_provider(workspace.billing_provider)
    if not workspace.external_subscription_id:
        return None
    if workspace.external_subscription_id.startswith("sub_"):
        return get_provider(BillingProviderName.STRIPE)
    return get_provider(BillingProviderName.MERCADOPAGO)
