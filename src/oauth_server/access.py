"""Access control for MCP resources.

Decides whether a principal may obtain tokens for a resource:
public resources are open, owners always pass, everyone else needs an
unrevoked and unexpired grant for the exact (resource, user) pair.
"""

import asyncio
from datetime import datetime
from typing import Optional

from shared.logging import get_logger
from shared.models import (
    ANONYMOUS_USER_ID,
    AccessDecision,
    AccessGrant,
    Resource,
    Visibility,
    utcnow,
)

logger = get_logger(__name__)


class AccessControl:
    """
    Grant store and access decisions.

    Grants are keyed by (resource_id, user_id); at most one record exists
    per pair and re-granting reactivates it.
    """

    def __init__(self) -> None:
        self._grants: dict[tuple[str, str], AccessGrant] = {}
        self._lock = asyncio.Lock()

    async def check(self, resource: Resource, user_id: Optional[str]) -> AccessDecision:
        """
        Decide whether ``user_id`` may use ``resource``.

        Args:
            resource: The resolved resource
            user_id: Principal id, ``None`` or ``"anonymous"`` for no session

        Returns:
            AccessDecision with the reason when denied
        """
        if resource.visibility == Visibility.PUBLIC:
            return AccessDecision(allowed=True, is_owner=user_id == resource.owner_id)

        if not user_id or user_id == ANONYMOUS_USER_ID:
            return AccessDecision(allowed=False, reason="Authentication required for private MCP")

        if user_id == resource.owner_id:
            return AccessDecision(allowed=True, is_owner=True)

        grant = self._grants.get((resource.id, user_id))
        if grant is None:
            logger.info("Access denied (no grant)", slug=resource.slug, user=user_id)
            return AccessDecision(allowed=False, reason="You do not have access to this private MCP")

        now = utcnow()
        if grant.revoked_at is not None:
            logger.info("Access denied (grant revoked)", slug=resource.slug, user=user_id)
            return AccessDecision(allowed=False, reason="Your access to this MCP has been revoked")

        if not grant.is_active(now):
            logger.info("Access denied (grant expired)", slug=resource.slug, user=user_id)
            return AccessDecision(allowed=False, reason="Your access to this MCP has expired")

        return AccessDecision(allowed=True)

    async def can_access(self, resource: Resource, user_id: Optional[str]) -> bool:
        decision = await self.check(resource, user_id)
        return decision.allowed

    async def grant(
        self,
        resource_id: str,
        user_id: str,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> AccessGrant:
        """Create or reactivate a grant. Any earlier revocation is cleared."""
        async with self._lock:
            existing = self._grants.get((resource_id, user_id))
            grant = AccessGrant(
                resource_id=resource_id,
                user_id=user_id,
                granted_by=granted_by,
                expires_at=expires_at,
            )
            if existing is not None:
                grant.id = existing.id
            self._grants[(resource_id, user_id)] = grant

        logger.info("Access granted", resource_id=resource_id, user=user_id, granted_by=granted_by)
        return grant

    def add_grant(self, grant: AccessGrant) -> AccessGrant:
        """Insert a grant record as-is. Used when seeding from a catalog."""
        self._grants[(grant.resource_id, grant.user_id)] = grant
        return grant

    async def revoke(self, resource_id: str, user_id: str) -> bool:
        async with self._lock:
            grant = self._grants.get((resource_id, user_id))
            if grant is None or grant.revoked_at is not None:
                return False
            grant.revoked_at = utcnow()

        logger.info("Access revoked", resource_id=resource_id, user=user_id)
        return True

    async def list_grants(self, resource_id: str) -> list[AccessGrant]:
        """Active grants for a resource, newest first."""
        now = utcnow()
        grants = [
            g for g in self._grants.values()
            if g.resource_id == resource_id and g.is_active(now)
        ]
        return sorted(grants, key=lambda g: g.granted_at, reverse=True)
