"""
Response Token Service.

Issues short-lived, single-use tokens that let a customer pick one of the
offered slots (or decline) from an email link, SMS reply or voice prompt.

Token format: 64 hex characters of randomness, "_", first 8 characters of
the rescheduling request id.

Storage is pluggable:
- InMemoryTokenStore: process-local dict guarded by an asyncio lock
- RedisTokenStore (app.infra.redis): shared across workers, native TTL
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import get_settings
from app.core.rescheduling.models import (
    AvailabilitySlot,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


INVALID_TOKEN_MESSAGE = "Invalid or expired response token"
EXPIRED_TOKEN_MESSAGE = "Response token has expired"
INVALID_SELECTION_MESSAGE = "Invalid slot selection"


@dataclass
class ResponseTokenData:
    """What a response token grants access to."""

    token: str
    rescheduling_request_id: str
    tenant_id: str
    contact_id: str
    expires_at: datetime
    available_slots: list[AvailabilitySlot] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    is_reminder: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the token is past its expiry."""
        return (now or _utcnow()) > self.expires_at

    def to_dict(self) -> dict:
        """Convert to JSON-safe dictionary."""
        return {
            "token": self.token,
            "rescheduling_request_id": self.rescheduling_request_id,
            "tenant_id": self.tenant_id,
            "contact_id": self.contact_id,
            "expires_at": format_datetime(self.expires_at),
            "available_slots": [s.to_dict() for s in self.available_slots],
            "created_at": format_datetime(self.created_at),
            "is_reminder": self.is_reminder,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResponseTokenData":
        """Create from dictionary."""
        return cls(
            token=data["token"],
            rescheduling_request_id=data["rescheduling_request_id"],
            tenant_id=data["tenant_id"],
            contact_id=data["contact_id"],
            expires_at=parse_datetime(data["expires_at"]),
            available_slots=[AvailabilitySlot.from_dict(s) for s in data.get("available_slots", [])],
            created_at=parse_datetime(data.get("created_at")) or _utcnow(),
            is_reminder=data.get("is_reminder", False),
        )


@dataclass
class TokenRedemption:
    """Result of validating or redeeming a token."""

    valid: bool
    message: str
    token_data: Optional[ResponseTokenData] = None
    selected_slot: Optional[AvailabilitySlot] = None
    declined: bool = False

    @property
    def request_id(self) -> Optional[str]:
        return self.token_data.rescheduling_request_id if self.token_data else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {"valid": self.valid, "message": self.message}
        if self.token_data:
            result["rescheduling_request_id"] = self.token_data.rescheduling_request_id
        if self.selected_slot:
            result["selected_slot"] = self.selected_slot.to_dict()
        if self.declined:
            result["declined"] = True
        return result


class TokenStore(ABC):
    """Key/value storage for response tokens."""

    @abstractmethod
    async def put(self, data: ResponseTokenData) -> None:
        """Store a token until its expiry."""

    @abstractmethod
    async def get(self, token: str) -> Optional[ResponseTokenData]:
        """Read a token without consuming it."""

    @abstractmethod
    async def pop(self, token: str) -> Optional[ResponseTokenData]:
        """Atomically read and remove a token. None if already gone."""

    @abstractmethod
    async def delete(self, token: str) -> bool:
        """Remove a token. Returns True if it existed."""

    @abstractmethod
    async def items(self) -> list[ResponseTokenData]:
        """All stored tokens, expired ones included."""

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Remove expired tokens. Returns number removed."""
        now = now or _utcnow()
        removed = 0
        for data in await self.items():
            if data.is_expired(now) and await self.delete(data.token):
                removed += 1
        return removed


class InMemoryTokenStore(TokenStore):
    """Process-local token store."""

    def __init__(self):
        self._tokens: dict[str, ResponseTokenData] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: ResponseTokenData) -> None:
        async with self._lock:
            self._tokens[data.token] = data

    async def get(self, token: str) -> Optional[ResponseTokenData]:
        return self._tokens.get(token)

    async def pop(self, token: str) -> Optional[ResponseTokenData]:
        async with self._lock:
            return self._tokens.pop(token, None)

    async def delete(self, token: str) -> bool:
        async with self._lock:
            return self._tokens.pop(token, None) is not None

    async def items(self) -> list[ResponseTokenData]:
        return list(self._tokens.values())

    def __len__(self) -> int:
        return len(self._tokens)


class ResponseTokenService:
    """
    Issues, validates and redeems customer response tokens.

    Redemption rules:
    - unknown token: rejected
    - expired token: evicted and rejected
    - slot index out of range: rejected, token kept for a corrected reply
    - otherwise the token is consumed; only one concurrent redeemer wins
    """

    def __init__(
        self,
        store: Optional[TokenStore] = None,
        ttl_hours: Optional[int] = None,
        reminder_ttl_hours: Optional[int] = None,
    ):
        settings = get_settings()
        self.store = store if store is not None else InMemoryTokenStore()
        self.ttl = timedelta(hours=ttl_hours or settings.response_token_ttl_hours)
        self.reminder_ttl = timedelta(hours=reminder_ttl_hours or settings.reminder_token_ttl_hours)

    @staticmethod
    def generate_token(request_id: str) -> str:
        """Create a new unguessable token bound to a request id."""
        return f"{secrets.token_hex(32)}_{request_id[:8]}"

    async def issue(
        self,
        request_id: str,
        tenant_id: str,
        contact_id: str,
        available_slots: list[AvailabilitySlot],
        is_reminder: bool = False,
        now: Optional[datetime] = None,
    ) -> ResponseTokenData:
        """Issue a token for a request's offered slots.

        Args:
            request_id: Rescheduling request the customer is answering
            tenant_id: Owning tenant
            contact_id: Customer the token is sent to
            available_slots: Slots on offer, in the order presented
            is_reminder: Reminder tokens use the shorter reminder TTL
            now: Reference time

        Returns:
            Stored token data
        """
        now = now or _utcnow()
        data = ResponseTokenData(
            token=self.generate_token(request_id),
            rescheduling_request_id=request_id,
            tenant_id=tenant_id,
            contact_id=contact_id,
            expires_at=now + (self.reminder_ttl if is_reminder else self.ttl),
            available_slots=list(available_slots),
            created_at=now,
            is_reminder=is_reminder,
        )
        await self.store.put(data)
        logger.info(
            f"Issued {'reminder ' if is_reminder else ''}response token for request {request_id} "
            f"(expires {data.expires_at.isoformat()})"
        )
        return data

    async def validate(self, token: str, now: Optional[datetime] = None) -> TokenRedemption:
        """Check a token without consuming it. Expired tokens are evicted."""
        data = await self.store.get(token)
        if data is None:
            return TokenRedemption(valid=False, message=INVALID_TOKEN_MESSAGE)

        if data.is_expired(now):
            await self.store.delete(token)
            logger.info(f"Evicted expired response token for request {data.rescheduling_request_id}")
            return TokenRedemption(valid=False, message=EXPIRED_TOKEN_MESSAGE)

        return TokenRedemption(valid=True, message="Token is valid", token_data=data)

    async def redeem(
        self,
        token: str,
        selected_slot_index: Optional[int],
        now: Optional[datetime] = None,
    ) -> TokenRedemption:
        """Consume a token with the customer's choice.

        Args:
            token: Response token
            selected_slot_index: Index into the offered slots, or None to decline
            now: Reference time

        Returns:
            TokenRedemption; valid=True means the token was consumed
        """
        check = await self.validate(token, now)
        if not check.valid:
            return check

        data = check.token_data
        selected = None
        if selected_slot_index is not None:
            if not 0 <= selected_slot_index < len(data.available_slots):
                return TokenRedemption(
                    valid=False,
                    message=INVALID_SELECTION_MESSAGE,
                    token_data=data,
                )
            selected = data.available_slots[selected_slot_index]

        if await self.store.pop(token) is None:
            # Another reply consumed it first
            return TokenRedemption(valid=False, message=INVALID_TOKEN_MESSAGE)

        if selected is None:
            logger.info(f"Customer declined offered slots for request {data.rescheduling_request_id}")
            return TokenRedemption(
                valid=True,
                message="Customer declined the offered times",
                token_data=data,
                declined=True,
            )

        logger.info(f"Customer selected slot {selected_slot_index} for request {data.rescheduling_request_id}")
        return TokenRedemption(
            valid=True,
            message="Slot selected",
            token_data=data,
            selected_slot=selected,
        )

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Evict all expired tokens. Returns number removed."""
        removed = await self.store.purge_expired(now)
        if removed:
            logger.info(f"Cleaned up {removed} expired response tokens")
        return removed

    async def pending(
        self,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[ResponseTokenData]:
        """Live tokens, soonest expiry first."""
        now = now or _utcnow()
        live = [
            data for data in await self.store.items()
            if not data.is_expired(now) and (tenant_id is None or data.tenant_id == tenant_id)
        ]
        return sorted(live, key=lambda d: d.expires_at)

    async def revoke(self, token: str) -> bool:
        """Remove a single token."""
        return await self.store.delete(token)

    async def revoke_for_request(self, request_id: str) -> int:
        """Remove every outstanding token for a request."""
        revoked = 0
        for data in await self.store.items():
            if data.rescheduling_request_id == request_id and await self.store.delete(data.token):
                revoked += 1
        if revoked:
            logger.info(f"Revoked {revoked} response tokens for request {request_id}")
        return revoked


# Singleton instance
_token_service: Optional[ResponseTokenService] = None


def get_token_service() -> ResponseTokenService:
    """Get singleton token service using the configured backend."""
    global _token_service
    if _token_service is None:
        if get_settings().token_store_backend == "redis":
            from app.infra.redis import RedisTokenStore

            _token_service = ResponseTokenService(store=RedisTokenStore())
        else:
            _token_service = ResponseTokenService()
    return _token_service
