"""Tests for customer response tokens."""

import asyncio
import re
from datetime import datetime, timedelta, timezone

import pytest

from app.core.rescheduling.models import AvailabilitySlot
from app.core.rescheduling.tokens import (
    EXPIRED_TOKEN_MESSAGE,
    INVALID_SELECTION_MESSAGE,
    INVALID_TOKEN_MESSAGE,
    InMemoryTokenStore,
    ResponseTokenData,
    ResponseTokenService,
)


NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
REQUEST_ID = "3f2a9c1e-7b44-4d0e-9a55-0c1d2e3f4a5b"


def make_slots(count: int = 3) -> list[AvailabilitySlot]:
    start = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)
    return [
        AvailabilitySlot(
            start_time=start + timedelta(hours=i),
            end_time=start + timedelta(hours=i, minutes=60),
            duration=60,
        )
        for i in range(count)
    ]


@pytest.fixture
def store():
    return InMemoryTokenStore()


@pytest.fixture
def service(store):
    return ResponseTokenService(store=store, ttl_hours=24, reminder_ttl_hours=12)


async def issue(service, request_id=REQUEST_ID, tenant_id="tenant-1", **kwargs):
    return await service.issue(
        request_id=request_id,
        tenant_id=tenant_id,
        contact_id="contact-1",
        available_slots=make_slots(),
        now=kwargs.pop("now", NOW),
        **kwargs,
    )


class TestIssue:
    """Test token issuance."""

    @pytest.mark.asyncio
    async def test_token_format(self, service):
        data = await issue(service)

        assert re.fullmatch(r"[0-9a-f]{64}_3f2a9c1e", data.token)

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, service):
        first = await issue(service)
        second = await issue(service)

        assert first.token != second.token

    @pytest.mark.asyncio
    async def test_standard_ttl(self, service):
        data = await issue(service)

        assert data.expires_at == NOW + timedelta(hours=24)
        assert not data.is_reminder

    @pytest.mark.asyncio
    async def test_reminder_ttl(self, service):
        data = await issue(service, is_reminder=True)

        assert data.expires_at == NOW + timedelta(hours=12)
        assert data.is_reminder

    @pytest.mark.asyncio
    async def test_slots_copied(self, service, store):
        data = await issue(service)

        assert len(data.available_slots) == 3
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_services_share_injected_empty_store(self, store):
        """An empty injected store is used, not replaced."""
        issuer = ResponseTokenService(store=store, ttl_hours=24, reminder_ttl_hours=12)
        redeemer = ResponseTokenService(store=store, ttl_hours=24, reminder_ttl_hours=12)

        data = await issue(issuer)

        assert issuer.store is store
        assert (await redeemer.validate(data.token, NOW)).valid


class TestValidate:
    """Test non-consuming validation."""

    @pytest.mark.asyncio
    async def test_unknown_token(self, service):
        result = await service.validate("nope", NOW)

        assert not result.valid
        assert result.message == INVALID_TOKEN_MESSAGE

    @pytest.mark.asyncio
    async def test_valid_token_not_consumed(self, service, store):
        data = await issue(service)

        result = await service.validate(data.token, NOW + timedelta(hours=1))

        assert result.valid
        assert result.request_id == REQUEST_ID
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_expired_token_evicted(self, service, store):
        data = await issue(service)

        result = await service.validate(data.token, NOW + timedelta(hours=25))

        assert not result.valid
        assert result.message == EXPIRED_TOKEN_MESSAGE
        assert len(store) == 0


class TestRedeem:
    """Test single-use redemption."""

    @pytest.mark.asyncio
    async def test_select_slot(self, service, store):
        data = await issue(service)

        result = await service.redeem(data.token, 1, NOW)

        assert result.valid
        assert result.selected_slot == data.available_slots[1]
        assert not result.declined
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_decline(self, service):
        data = await issue(service)

        result = await service.redeem(data.token, None, NOW)

        assert result.valid
        assert result.declined
        assert result.selected_slot is None

    @pytest.mark.asyncio
    async def test_second_redemption_rejected(self, service):
        data = await issue(service)
        await service.redeem(data.token, 0, NOW)

        result = await service.redeem(data.token, 0, NOW)

        assert not result.valid
        assert result.message == INVALID_TOKEN_MESSAGE

    @pytest.mark.asyncio
    async def test_out_of_range_keeps_token(self, service, store):
        data = await issue(service)

        result = await service.redeem(data.token, 3, NOW)

        assert not result.valid
        assert result.message == INVALID_SELECTION_MESSAGE
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_negative_index_rejected(self, service):
        data = await issue(service)

        result = await service.redeem(data.token, -1, NOW)

        assert result.message == INVALID_SELECTION_MESSAGE

    @pytest.mark.asyncio
    async def test_expired_token_cannot_be_redeemed(self, service):
        data = await issue(service, is_reminder=True)

        result = await service.redeem(data.token, 0, NOW + timedelta(hours=13))

        assert not result.valid
        assert result.message == EXPIRED_TOKEN_MESSAGE

    @pytest.mark.asyncio
    async def test_concurrent_redemption_single_winner(self, service):
        data = await issue(service)

        results = await asyncio.gather(
            *(service.redeem(data.token, 0, NOW) for _ in range(5))
        )

        assert sum(r.valid for r in results) == 1


class TestHousekeeping:
    """Test cleanup, listing and revocation."""

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, service, store):
        await issue(service, is_reminder=True)
        await issue(service)

        removed = await service.cleanup_expired(NOW + timedelta(hours=13))

        assert removed == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_pending_filters_by_tenant_and_orders_by_expiry(self, service):
        standard = await issue(service)
        reminder = await issue(service, is_reminder=True)
        await issue(service, tenant_id="tenant-2")

        pending = await service.pending("tenant-1", NOW)

        assert [d.token for d in pending] == [reminder.token, standard.token]

    @pytest.mark.asyncio
    async def test_pending_excludes_expired(self, service):
        await issue(service, is_reminder=True)

        assert await service.pending(now=NOW + timedelta(hours=13)) == []

    @pytest.mark.asyncio
    async def test_revoke_for_request(self, service, store):
        await issue(service)
        await issue(service, is_reminder=True)
        await issue(service, request_id="other-request")

        revoked = await service.revoke_for_request(REQUEST_ID)

        assert revoked == 2
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_revoke_single(self, service):
        data = await issue(service)

        assert await service.revoke(data.token)
        assert not await service.revoke(data.token)


def test_token_data_dict_round_trip():
    data = ResponseTokenData(
        token="abc_3f2a9c1e",
        rescheduling_request_id=REQUEST_ID,
        tenant_id="tenant-1",
        contact_id="contact-1",
        expires_at=NOW + timedelta(hours=24),
        available_slots=make_slots(2),
        created_at=NOW,
        is_reminder=True,
    )

    restored = ResponseTokenData.from_dict(data.to_dict())

    assert restored == data
