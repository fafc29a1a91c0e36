"""Built-in event catalog for the SaaS domain modules.

Each payload schema declares its own ``event_type`` so the catalog can be
registered in one call:

    registry = SchemaRegistry()
    register_catalog(registry)
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from pydantic import Field

from eventbus_service.core.events.base import EventPayload

if TYPE_CHECKING:
    from eventbus_service.core.events.registry import SchemaRegistry


# ============================================================================
# Tenant Events
# ============================================================================


class TenantCreated(EventPayload):
    event_type: ClassVar[str] = "tenant.created"

    tenant_id: str
    slug: str
    name: str
    owner_id: str


class TenantDeleted(EventPayload):
    event_type: ClassVar[str] = "tenant.deleted"

    tenant_id: str
    actor_id: str


class TenantMemberAdded(EventPayload):
    event_type: ClassVar[str] = "tenant.member.added"

    tenant_id: str
    user_id: str
    role_id: str
    invited_by: str | None = None


# ============================================================================
# Billing Events
# ============================================================================


class PaymentSucceeded(EventPayload):
    event_type: ClassVar[str] = "billing.payment.succeeded"

    tenant_id: str
    amount: int = Field(ge=0, description="Amount in minor currency units")
    currency: str = Field(min_length=3, max_length=3)
    invoice_id: str | None = None


class PaymentFailed(EventPayload):
    event_type: ClassVar[str] = "billing.payment.failed"

    tenant_id: str
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    reason: str | None = None


# ============================================================================
# Credit Events
# ============================================================================


class CreditsGrantRequested(EventPayload):
    """Request to add credits to a tenant's ledger.

    Consumers must apply the grant at most once per ``idempotency_key``;
    the same request may be delivered more than once.
    """

    event_type: ClassVar[str] = "credits.grant_requested"

    scope_id: str
    amount: int = Field(gt=0)
    idempotency_key: str = Field(min_length=1)
    reason: str | None = None


class CreditsGranted(EventPayload):
    event_type: ClassVar[str] = "credits.granted"

    tenant_id: str
    amount: int = Field(gt=0)
    reason: str
    source: Literal["subscription", "topup", "promo", "manual"] | None = None
    expires_at: datetime | None = None


class CreditsConsumed(EventPayload):
    event_type: ClassVar[str] = "credits.consumed"

    tenant_id: str
    amount: int = Field(gt=0)
    reason: str
    feature: str | None = None
    remaining: int | None = None


# ============================================================================
# Settings and Webhook Events
# ============================================================================


class SettingUpdated(EventPayload):
    event_type: ClassVar[str] = "settings.updated"

    tenant_id: str
    key: str
    old_value: Any = None
    new_value: Any


class WebhookFailed(EventPayload):
    event_type: ClassVar[str] = "webhooks.failed"

    tenant_id: str
    webhook_id: str
    target_event_type: str
    error: str
    attempt: int = Field(ge=1)


CATALOG: tuple[type[EventPayload], ...] = (
    TenantCreated,
    TenantDeleted,
    TenantMemberAdded,
    PaymentSucceeded,
    PaymentFailed,
    CreditsGrantRequested,
    CreditsGranted,
    CreditsConsumed,
    SettingUpdated,
    WebhookFailed,
)


def register_catalog(registry: SchemaRegistry) -> SchemaRegistry:
    """Register every catalog schema on ``registry``."""
    for schema in CATALOG:
        registry.register(schema)
    return registry


__all__ = [
    "CATALOG",
    "CreditsConsumed",
    "CreditsGrantRequested",
    "CreditsGranted",
    "PaymentFailed",
    "PaymentSucceeded",
    "SettingUpdated",
    "TenantCreated",
    "TenantDeleted",
    "TenantMemberAdded",
    "WebhookFailed",
    "register_catalog",
]
