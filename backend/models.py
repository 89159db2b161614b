from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

FREE_PLAN_KEY = "FREE"

# Fixed window between a failed renewal (past_due) and the forced downgrade.
GRACE_PERIOD_DAYS = 3


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Currency(str, Enum):
    BRL = "BRL"
    USD = "USD"


class BillingProviderName(str, Enum):
    STRIPE = "stripe"
    MERCADOPAGO = "mercadopago"


class ProviderSubscriptionStatus(str, Enum):
    """Normalized provider-side status carried by a SubscriptionSnapshot."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PENDING = "pending"  # incomplete / awaiting first payment; never applied


class UsageEventType(str, Enum):
    GOOGLE_PLACES_SEARCH = "GOOGLE_PLACES_SEARCH"
    GOOGLE_PLACES_DETAILS = "GOOGLE_PLACES_DETAILS"
    SERPER_REQUEST = "SERPER_REQUEST"
    AI_TOKENS = "AI_TOKENS"


class BillingEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class UserRole(str, Enum):
    ROLE_MEMBER = "ROLE_MEMBER"
    ROLE_ADMIN = "ROLE_ADMIN"


class AuditAction(str, Enum):
    # Subscription lifecycle (provider driven)
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_PAST_DUE = "SUBSCRIPTION_PAST_DUE"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"

    # Time driven transitions
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    DOWNGRADE_SCHEDULED = "DOWNGRADE_SCHEDULED"
    DOWNGRADE_SCHEDULE_CANCELLED = "DOWNGRADE_SCHEDULE_CANCELLED"
    DOWNGRADE_APPLIED = "DOWNGRADE_APPLIED"

    # User initiated
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    PLAN_UPGRADED_IN_PLACE = "PLAN_UPGRADED_IN_PLACE"
    CANCELLED_TO_FREE = "CANCELLED_TO_FREE"

    # Admin
    PLAN_CONFIG_UPDATED = "PLAN_CONFIG_UPDATED"

# ============================================================================
# PLAN CATALOG
# ============================================================================

class Plan(BaseModel):
    """A priced tier with a monthly lead quota and feature entitlements."""
    model_config = ConfigDict(extra="ignore")

    key: str
    name: str
    price_monthly_brl: float = 0
    price_annual_brl: float = 0
    price_monthly_usd: float = 0
    price_annual_usd: float = 0
    leads_limit: int
    features: List[str] = Field(default_factory=list)  # ordered
    is_active: bool = True
    sort_order: int = 0
    updated_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.key == FREE_PLAN_KEY

    def price_for(self, cycle: BillingCycle, currency: Currency) -> float:
        if cycle == BillingCycle.ANNUAL:
            return self.price_annual_brl if currency == Currency.BRL else self.price_annual_usd
        return self.price_monthly_brl if currency == Currency.BRL else self.price_monthly_usd


class PlanUpdate(BaseModel):
    """Administrative edit of a plan; only provided fields change."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    price_monthly_brl: Optional[float] = Field(default=None, ge=0)
    price_annual_brl: Optional[float] = Field(default=None, ge=0)
    price_monthly_usd: Optional[float] = Field(default=None, ge=0)
    price_annual_usd: Optional[float] = Field(default=None, ge=0)
    leads_limit: Optional[int] = Field(default=None, ge=0)
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None

# ============================================================================
# WORKSPACE BILLING STATE
# ============================================================================

class WorkspaceBilling(BaseModel):
    """Billing fields of a workspace (tenant). Rows are never deleted."""
    model_config = ConfigDict(extra="ignore")

    workspace_id: str
    plan: str = FREE_PLAN_KEY
    billing_provider: Optional[BillingProviderName] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_period_end: Optional[datetime] = None  # meaningful only while active/past_due
    leads_used: int = 0
    leads_limit: int = 0  # snapshot of the plan quota, not a live join
    grace_period_end: Optional[datetime] = None  # set iff past_due
    pending_plan_id: Optional[str] = None
    pending_plan_effective_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SubscriptionSnapshot(BaseModel):
    """Provider-independent view of a subscription at one point in time."""
    model_config = ConfigDict(extra="ignore")

    provider: BillingProviderName
    external_id: str
    status: ProviderSubscriptionStatus
    current_period_end: Optional[datetime] = None
    cycle: BillingCycle = BillingCycle.MONTHLY
    external_customer_id: Optional[str] = None
    plan_key: Optional[str] = None
    workspace_id: Optional[str] = None


class CustomerRef(BaseModel):
    """Who is paying; passed to the provider on subscription creation."""
    model_config = ConfigDict(extra="ignore")

    workspace_id: str
    email: str
    name: Optional[str] = None
    external_customer_id: Optional[str] = None
    card_token: Optional[str] = None  # MercadoPago card token from the client SDK


class ProratedAmount(BaseModel):
    remaining_ratio: float
    amount_brl: int
    amount_usd: float

# ============================================================================
# USAGE LEDGER
# ============================================================================

class UsageEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str
    type: UsageEventType
    quantity: int = 1
    metadata: Optional[Dict[str, Any]] = None  # AI_TOKENS: {input_tokens, output_tokens}
    created_at: datetime = Field(default_factory=_utcnow)


class WorkspaceUsage(BaseModel):
    workspace_id: str
    google_search_count: int = 0
    details_count: int = 0
    serper_requests: int = 0
    ai_input_tokens: int = 0
    ai_output_tokens: int = 0

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    workspace_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

