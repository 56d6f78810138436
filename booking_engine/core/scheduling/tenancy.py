"""
Tenant isolation helpers.

Every core entry point takes an explicit tenant_id; these helpers turn
missing or foreign-tenant entities into the same NotFoundError so that
existence never leaks across tenants.
"""

import logging
from typing import Optional, Protocol, TypeVar

from booking_engine.core.scheduling.errors import NotFoundError

logger = logging.getLogger(__name__)


class TenantOwned(Protocol):
    tenant_id: str


T = TypeVar("T", bound=TenantOwned)


def require_tenant_id(tenant_id: str) -> str:
    """Reject blank tenant identifiers."""
    if not tenant_id or not str(tenant_id).strip():
        raise ValueError("tenant_id is required")
    return str(tenant_id)


def ensure_owned(
    entity: Optional[T],
    tenant_id: str,
    kind: str,
    entity_id: str,
) -> T:
    """Return `entity` if it exists and belongs to `tenant_id`.

    Raises:
        NotFoundError: If the entity is missing or owned by another tenant
    """
    if entity is None:
        raise NotFoundError(kind, entity_id)
    if entity.tenant_id != tenant_id:
        logger.warning(
            f"Cross-tenant access to {kind} {entity_id} rejected for tenant {tenant_id}"
        )
        raise NotFoundError(kind, entity_id)
    return entity
