"""Tests for rescheduling storage backends."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import OperationalError

from app.core.rescheduling.errors import StorageError
from app.core.rescheduling.models import AvailabilitySlot, Contact, ReschedulingRequest
from app.core.rescheduling.storage import InMemoryReschedulingStorage
from app.core.rescheduling.types import RequestStatus, RescheduleReason, UrgencyLevel, WorkflowStage
from app.infra.storage import SqlReschedulingStorage, _request_columns
from app.models.database import CallLog, ReschedulingRequestRecord


UTC = timezone.utc
NOW = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


def make_request(key: str = "reschedule_t1_c1_s1", tenant_id: str = "tenant-1", **kwargs) -> ReschedulingRequest:
    return ReschedulingRequest(
        tenant_id=tenant_id,
        contact_id="contact-1",
        idempotency_key=key,
        original_appointment_time=NOW,
        created_at=kwargs.pop("created_at", NOW),
        **kwargs,
    )


class TestInMemoryStorage:
    """Test the dict-backed storage."""

    @pytest.fixture
    def storage(self):
        return InMemoryReschedulingStorage()

    @pytest.mark.asyncio
    async def test_create_or_get(self, storage):
        first, created = await storage.create_rescheduling_request(make_request())
        second, created_again = await storage.create_rescheduling_request(make_request())

        assert created
        assert not created_again
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_concurrent_create_single_row(self, storage):
        results = await asyncio.gather(
            *(storage.create_rescheduling_request(make_request()) for _ in range(10))
        )

        assert sum(created for _, created in results) == 1
        assert len({r.id for r, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_same_key_other_tenant(self, storage):
        _, created = await storage.create_rescheduling_request(make_request())
        _, created_other = await storage.create_rescheduling_request(make_request(tenant_id="tenant-2"))

        assert created and created_other

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, storage):
        request, _ = await storage.create_rescheduling_request(make_request())

        assert await storage.get_rescheduling_request(request.id, "tenant-1") is not None
        assert await storage.get_rescheduling_request(request.id, "tenant-2") is None

    @pytest.mark.asyncio
    async def test_update(self, storage):
        request, _ = await storage.create_rescheduling_request(make_request())

        updated = await storage.update_rescheduling_request(
            request.id, "tenant-1", {"status": RequestStatus.BLOCKED}
        )

        assert updated.status == RequestStatus.BLOCKED
        assert (await storage.get_rescheduling_request(request.id, "tenant-1")).status == RequestStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, storage):
        with pytest.raises(StorageError):
            await storage.update_rescheduling_request("missing", "tenant-1", {"status": RequestStatus.BLOCKED})

    @pytest.mark.asyncio
    async def test_update_unknown_field_raises(self, storage):
        request, _ = await storage.create_rescheduling_request(make_request())

        with pytest.raises(KeyError):
            await storage.update_rescheduling_request(request.id, "tenant-1", {"colour": "blue"})

    @pytest.mark.asyncio
    async def test_list_newest_first_with_status_filter(self, storage):
        old, _ = await storage.create_rescheduling_request(make_request("k1", created_at=NOW - timedelta(days=1)))
        new, _ = await storage.create_rescheduling_request(make_request("k2"))
        await storage.update_rescheduling_request(old.id, "tenant-1", {"status": RequestStatus.COMPLETED})

        everything = await storage.get_rescheduling_requests_by_tenant("tenant-1")
        pending = await storage.get_rescheduling_requests_by_tenant("tenant-1", RequestStatus.PENDING)

        assert [r.id for r in everything] == [new.id, old.id]
        assert [r.id for r in pending] == [new.id]

    @pytest.mark.asyncio
    async def test_expired_candidates(self, storage):
        cutoff = NOW - timedelta(days=7)
        stale, _ = await storage.create_rescheduling_request(make_request("k1", created_at=NOW - timedelta(days=8)))
        await storage.create_rescheduling_request(make_request("k2", created_at=NOW - timedelta(days=1)))
        done, _ = await storage.create_rescheduling_request(make_request("k3", created_at=NOW - timedelta(days=9)))
        await storage.update_rescheduling_request(done.id, "tenant-1", {"status": RequestStatus.COMPLETED})

        candidates = await storage.get_expired_rescheduling_requests(cutoff)

        assert [r.id for r in candidates] == [stale.id]

    @pytest.mark.asyncio
    async def test_contacts(self, storage):
        storage.add_contact(Contact(id="contact-1", tenant_id="tenant-1", name="Jane"))

        updated = await storage.update_contact("contact-1", "tenant-1", {"call_attempts": 3})

        assert updated.call_attempts == 3
        assert await storage.get_contact("contact-1", "tenant-2") is None
        with pytest.raises(StorageError):
            await storage.update_contact("contact-1", "tenant-2", {"call_attempts": 4})


def make_record(**kwargs) -> ReschedulingRequestRecord:
    values = {
        "id": "req-1",
        "tenant_id": "tenant-1",
        "contact_id": "contact-1",
        "idempotency_key": "reschedule_t1_c1_s1",
        "original_appointment_time": NOW,
        "reschedule_reason": RescheduleReason.EMERGENCY,
        "urgency_level": UrgencyLevel.URGENT,
        "proposed_times": ["2025-03-05T10:00:00+00:00"],
        "status": RequestStatus.PENDING,
        "workflow_stage": WorkflowStage.AVAILABILITY_CHECK,
        "automated_processing": True,
        "available_slots": [],
        "calendar_updated": False,
        "confirmation_sent": False,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(kwargs)
    return ReschedulingRequestRecord(**values)


class TestSqlStorage:
    """Test SQL storage against a mocked session."""

    @pytest.fixture
    def mock_session(self):
        session = MagicMock()
        session.get = AsyncMock(return_value=None)
        session.execute = AsyncMock()
        session.flush = AsyncMock()
        return session

    @pytest.fixture
    def storage(self, mock_session):
        @asynccontextmanager
        async def session_context():
            yield mock_session

        return SqlReschedulingStorage(session_context=session_context)

    def test_request_columns_serializes_json(self):
        slot = AvailabilitySlot(NOW, NOW + timedelta(hours=1), 60)

        columns = _request_columns({"available_slots": [slot], "proposed_times": [NOW], "status": RequestStatus.PENDING})

        assert columns["available_slots"][0]["start_time"] == "2025-03-03T09:00:00+00:00"
        assert columns["proposed_times"] == ["2025-03-03T09:00:00+00:00"]
        assert columns["status"] == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_converts_record(self, storage, mock_session):
        mock_session.get.return_value = make_record()

        request = await storage.get_rescheduling_request("req-1", "tenant-1")

        assert request.workflow_stage == WorkflowStage.AVAILABILITY_CHECK
        assert request.proposed_times == [datetime(2025, 3, 5, 10, 0, tzinfo=UTC)]

    @pytest.mark.asyncio
    async def test_get_other_tenant(self, storage, mock_session):
        mock_session.get.return_value = make_record()

        assert await storage.get_rescheduling_request("req-1", "tenant-2") is None

    @pytest.mark.asyncio
    async def test_update_applies_fields(self, storage, mock_session):
        record = make_record()
        mock_session.get.return_value = record
        slot = AvailabilitySlot(NOW, NOW + timedelta(hours=1), 60)

        updated = await storage.update_rescheduling_request(
            "req-1",
            "tenant-1",
            {"workflow_stage": WorkflowStage.CONFIRMATION, "available_slots": [slot]},
        )

        assert record.workflow_stage == WorkflowStage.CONFIRMATION
        assert record.available_slots[0]["duration"] == 60
        assert updated.available_slots == [slot]
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_missing(self, storage):
        with pytest.raises(StorageError):
            await storage.update_rescheduling_request("req-1", "tenant-1", {"processed_by": "x"})

    @pytest.mark.asyncio
    async def test_driver_error_wrapped(self, storage, mock_session):
        mock_session.get.side_effect = OperationalError("SELECT 1", {}, Exception("connection reset"))

        with pytest.raises(StorageError):
            await storage.get_contact("contact-1", "tenant-1")

    @pytest.mark.asyncio
    async def test_create_returns_existing_on_conflict(self, storage, mock_session):
        conflict = MagicMock()
        conflict.scalar_one_or_none.return_value = None
        existing = MagicMock()
        existing.scalar_one.return_value = make_record(id="req-existing")
        mock_session.execute.side_effect = [conflict, existing]

        stored, created = await storage.create_rescheduling_request(make_request())

        assert not created
        assert stored.id == "req-existing"

    @pytest.mark.asyncio
    async def test_create_inserted(self, storage, mock_session):
        inserted = MagicMock()
        inserted.scalar_one_or_none.return_value = "req-new"
        mock_session.execute.return_value = inserted
        request = make_request()

        stored, created = await storage.create_rescheduling_request(request)

        assert created
        assert stored is request
        assert mock_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_call_log_metadata_column(self, storage, mock_session):
        await storage.create_call_log(
            {
                "tenant_id": "tenant-1",
                "contact_id": "contact-1",
                "event": "reschedule_requested",
                "metadata": {"urgency": "high"},
                "created_at": NOW,
            }
        )

        log = mock_session.add.call_args.args[0]
        assert isinstance(log, CallLog)
        assert log.details == {"urgency": "high"}
        assert log.created_at == NOW
