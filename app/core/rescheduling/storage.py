"""
Storage interface for the rescheduling engine.

Every lookup is scoped by tenant. Implementations:
- InMemoryReschedulingStorage (here): tests and single-process use
- SqlReschedulingStorage (app.infra.storage): PostgreSQL via SQLAlchemy
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from app.core.rescheduling.errors import StorageError
from app.core.rescheduling.models import (
    Contact,
    ContactAnalytics,
    ReschedulingRequest,
    TenantConfig,
)
from app.core.rescheduling.state import UNRESOLVED_STATUSES, is_terminal_stage
from app.core.rescheduling.types import RequestStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ReschedulingStorage(ABC):
    """Persistence operations the engine depends on."""

    @abstractmethod
    async def get_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
    ) -> Optional[ReschedulingRequest]:
        """Get a request by id within a tenant."""

    @abstractmethod
    async def create_rescheduling_request(
        self,
        request: ReschedulingRequest,
    ) -> tuple[ReschedulingRequest, bool]:
        """Insert a request unless its idempotency key already exists.

        Returns:
            (stored request, created). When created is False the stored
            request is the pre-existing one.
        """

    @abstractmethod
    async def update_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
        updates: dict,
    ) -> ReschedulingRequest:
        """Apply field updates in one write.

        Raises:
            StorageError: If the request does not exist
        """

    @abstractmethod
    async def get_rescheduling_requests_by_tenant(
        self,
        tenant_id: str,
        status: Optional[RequestStatus] = None,
    ) -> list[ReschedulingRequest]:
        """List a tenant's requests, newest first."""

    @abstractmethod
    async def get_expired_rescheduling_requests(
        self,
        cutoff: datetime,
    ) -> list[ReschedulingRequest]:
        """Unresolved requests created before cutoff, across tenants."""

    @abstractmethod
    async def get_contact(self, contact_id: str, tenant_id: str) -> Optional[Contact]:
        """Get a contact within a tenant."""

    @abstractmethod
    async def update_contact(self, contact_id: str, tenant_id: str, updates: dict) -> Contact:
        """Apply field updates to a contact.

        Raises:
            StorageError: If the contact does not exist
        """

    @abstractmethod
    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        """Get tenant business settings."""

    @abstractmethod
    async def create_call_log(self, entry: dict) -> None:
        """Append a call log entry."""

    async def get_contact_analytics(
        self,
        contact_id: str,
        tenant_id: str,
    ) -> Optional[ContactAnalytics]:
        """Externally computed analytics for a contact, if any."""
        return None


class InMemoryReschedulingStorage(ReschedulingStorage):
    """Dict-backed storage. Create-or-get is atomic under a lock."""

    def __init__(self):
        self._requests: dict[str, ReschedulingRequest] = {}
        self._by_key: dict[tuple[str, str], str] = {}
        self._contacts: dict[tuple[str, str], Contact] = {}
        self._tenants: dict[str, TenantConfig] = {}
        self._analytics: dict[tuple[str, str], ContactAnalytics] = {}
        self.call_logs: list[dict] = []
        self._lock = asyncio.Lock()

    # Seeding helpers for collaborator records

    def add_contact(self, contact: Contact) -> None:
        self._contacts[(contact.tenant_id, contact.id)] = contact

    def add_tenant_config(self, config: TenantConfig) -> None:
        self._tenants[config.tenant_id] = config

    def add_contact_analytics(self, tenant_id: str, contact_id: str, analytics: ContactAnalytics) -> None:
        self._analytics[(tenant_id, contact_id)] = analytics

    # Rescheduling requests

    async def get_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
    ) -> Optional[ReschedulingRequest]:
        request = self._requests.get(request_id)
        if request is None or request.tenant_id != tenant_id:
            return None
        return request

    async def create_rescheduling_request(
        self,
        request: ReschedulingRequest,
    ) -> tuple[ReschedulingRequest, bool]:
        key = (request.tenant_id, request.idempotency_key)
        async with self._lock:
            existing_id = self._by_key.get(key)
            if existing_id is not None:
                return self._requests[existing_id], False
            self._requests[request.id] = request
            self._by_key[key] = request.id
            return request, True

    async def update_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
        updates: dict,
    ) -> ReschedulingRequest:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.tenant_id != tenant_id:
                raise StorageError(f"Rescheduling request {request_id} not found")
            updated = request.with_updates({**updates, "updated_at": _utcnow()})
            self._requests[request_id] = updated
            return updated

    async def get_rescheduling_requests_by_tenant(
        self,
        tenant_id: str,
        status: Optional[RequestStatus] = None,
    ) -> list[ReschedulingRequest]:
        requests = [
            r for r in self._requests.values()
            if r.tenant_id == tenant_id and (status is None or r.status == status)
        ]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def get_expired_rescheduling_requests(
        self,
        cutoff: datetime,
    ) -> list[ReschedulingRequest]:
        return [
            r for r in self._requests.values()
            if r.created_at < cutoff
            and r.status in UNRESOLVED_STATUSES
            and not is_terminal_stage(r.workflow_stage)
        ]

    # Collaborator records

    async def get_contact(self, contact_id: str, tenant_id: str) -> Optional[Contact]:
        return self._contacts.get((tenant_id, contact_id))

    async def update_contact(self, contact_id: str, tenant_id: str, updates: dict) -> Contact:
        async with self._lock:
            contact = self._contacts.get((tenant_id, contact_id))
            if contact is None:
                raise StorageError(f"Contact {contact_id} not found")
            updated = contact.with_updates(updates)
            self._contacts[(tenant_id, contact_id)] = updated
            return updated

    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        return self._tenants.get(tenant_id)

    async def create_call_log(self, entry: dict) -> None:
        self.call_logs.append(dict(entry))

    async def get_contact_analytics(
        self,
        contact_id: str,
        tenant_id: str,
    ) -> Optional[ContactAnalytics]:
        return self._analytics.get((tenant_id, contact_id))
