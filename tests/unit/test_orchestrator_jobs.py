"""Tests for provider-job units: polling, webhooks, timeouts, and recovery."""

import asyncio
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update

from omnigen.models import AIModel, GenerationStatus
from omnigen.models.base import utcnow
from omnigen.providers.base import GenerationResult, JobHandle, JobState, JobStatus
from omnigen.providers.errors import (
    REASON_INTERNAL_ERROR,
    REASON_PROVIDER_REJECTED,
    REASON_TIMEOUT,
    ProviderRejected,
    ProviderUnavailable,
)
from omnigen.providers.mock_adapter import MockJobAdapter
from omnigen.repositories.generation_repository import GenerationRepository
from omnigen.repositories.ledger_repository import LedgerRepository
from omnigen.schemas.generation import GenerationCreate
from omnigen.services.credit_source import CreditSource
from omnigen.services.generation_orchestrator import GenerationOrchestrator
from tests.conftest import TEST_USER_ID, fetch_unit

_PERSONAL = CreditSource.personal(TEST_USER_ID)
_VIDEO = GenerationCreate(models=["kling-video"], type="video", prompt="waves crashing")
_SUCCEEDED = JobStatus(
    state=JobState.SUCCEEDED,
    result=GenerationResult(urls=["https://fal.media/v.mp4"], metadata={"fps": 24}),
)


async def _balance(ledger, session_factory) -> Decimal:
    async with session_factory() as db:
        return await ledger.get_balance(db, _PERSONAL)


async def _wait_for_status(session_factory, unit_id, *statuses: GenerationStatus):
    wanted = {s.value for s in statuses}
    for _ in range(500):
        unit = await fetch_unit(session_factory, unit_id)
        if unit.status in wanted:
            return unit
        await asyncio.sleep(0.01)
    pytest.fail(f"unit {unit_id} never reached {sorted(wanted)}")


class _GatedJobAdapter(MockJobAdapter):
    """Job adapter whose status polls block until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__([_SUCCEEDED], provider="gatedqueue")
        self.gate = asyncio.Event()

    async def status(self, handle: JobHandle) -> JobStatus:
        await self.gate.wait()
        return await super().status(handle)


@pytest_asyncio.fixture
async def long_wait_video(session_factory):
    """Give kling-video the orchestrator's default wait budget (5s)."""
    async with session_factory() as db:
        await db.execute(
            update(AIModel).where(AIModel.id == "kling-video").values(max_wait_seconds=None)
        )
        await db.commit()


class TestPolling:
    """Units resolved by polling the provider."""

    async def test_job_polled_to_completion(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        job_adapter.statuses = [
            JobStatus(state=JobState.QUEUED, queue_position=2),
            JobStatus(state=JobState.RUNNING),
            _SUCCEEDED,
        ]

        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.job_handle == job_adapter.submitted[0].handle_id
        assert unit.result == {"urls": ["https://fal.media/v.mp4"], "metadata": {"fps": 24}}
        assert unit.credits == Decimal("0.5")
        assert unit.progress is None
        assert job_adapter.status_calls == 3
        assert await _balance(ledger, session_factory) == Decimal("9.5")

    async def test_transient_poll_errors_are_tolerated(
        self, orchestrator, session_factory, test_account, job_adapter
    ):
        job_adapter.statuses = [ProviderUnavailable("HTTP 502"), _SUCCEEDED]

        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.status == GenerationStatus.COMPLETED.value

    async def test_provider_failure_refunds(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        job_adapter.statuses = [
            JobStatus(
                state=JobState.FAILED,
                error="GPU fault",
                error_reason=REASON_PROVIDER_REJECTED,
            )
        ]

        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_PROVIDER_REJECTED
        assert "GPU" not in unit.error
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_rejected_submit_refunds(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        job_adapter.submit_outcomes = [ProviderRejected("HTTP 422: bad image url")]

        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.error_type == REASON_PROVIDER_REJECTED
        assert unit.job_handle is None
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_wait_budget_exhausted_times_out_and_cancels(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        # Default script: RUNNING forever; kling-video allows 0.5s
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_TIMEOUT
        assert job_adapter.cancelled == job_adapter.submitted
        assert await _balance(ledger, session_factory) == Decimal("10")
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []


@pytest.mark.usefixtures("long_wait_video")
class TestWebhooks:
    """Units resolved by provider callbacks."""

    async def test_webhook_completes_polling_unit(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.RUNNING
        )

        applied = await orchestrator.handle_webhook(
            "mockqueue",
            {"id": unit.job_handle, "status": "succeeded", "urls": ["https://fal.media/w.mp4"]},
        )
        await orchestrator.drain()

        assert applied is True
        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.result == {"urls": ["https://fal.media/w.mp4"]}
        assert await _balance(ledger, session_factory) == Decimal("9.5")

    async def test_duplicate_webhook_changes_nothing(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.RUNNING
        )
        payload = {"id": unit.job_handle, "status": "succeeded", "urls": ["https://a/v.mp4"]}

        await orchestrator.handle_webhook("mockqueue", payload)
        await orchestrator.handle_webhook("mockqueue", payload)
        await orchestrator.handle_webhook(
            "mockqueue", {"id": unit.job_handle, "status": "failed", "error": "late"}
        )
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert await _balance(ledger, session_factory) == Decimal("9.5")
        async with session_factory() as db:
            entries, _ = await ledger.list_entries(db, _PERSONAL)
        assert [e.operation for e in entries].count("settle") == 1

    async def test_webhook_after_poll_completion_changes_nothing(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        job_adapter.statuses = [JobStatus(state=JobState.RUNNING), _SUCCEEDED]
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        await orchestrator.drain()
        unit = await fetch_unit(session_factory, submitted.units[0].id)
        assert unit.status == GenerationStatus.COMPLETED.value
        balance = await _balance(ledger, session_factory)

        await orchestrator.handle_webhook(
            "mockqueue",
            {"id": unit.job_handle, "status": "succeeded", "urls": ["https://a/late.mp4"]},
        )
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, unit.id)
        assert unit.result == {"urls": ["https://fal.media/v.mp4"], "metadata": {"fps": 24}}
        assert await _balance(ledger, session_factory) == balance == Decimal("9.5")
        async with session_factory() as db:
            entries, _ = await ledger.list_entries(db, _PERSONAL)
        assert [e.operation for e in entries].count("settle") == 1

    async def test_poll_success_after_webhook_changes_nothing(
        self, orchestrator, session_factory, ledger, test_account, registry
    ):
        gated = _GatedJobAdapter()
        registry.register("kling-video", gated)
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.QUEUED
        )

        await orchestrator.handle_webhook(
            "gatedqueue",
            {"id": unit.job_handle, "status": "succeeded", "urls": ["https://a/hook.mp4"]},
        )
        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.COMPLETED.value
        balance = await _balance(ledger, session_factory)

        # The in-flight poll now reports success as well
        gated.gate.set()
        await orchestrator.drain()

        assert gated.status_calls == 1
        unit = await fetch_unit(session_factory, unit.id)
        assert unit.result == {"urls": ["https://a/hook.mp4"]}
        assert await _balance(ledger, session_factory) == balance == Decimal("9.5")
        async with session_factory() as db:
            entries, _ = await ledger.list_entries(db, _PERSONAL)
        assert [e.operation for e in entries].count("settle") == 1

    async def test_webhook_failure_refunds(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.RUNNING
        )

        await orchestrator.handle_webhook(
            "mockqueue", {"id": unit.job_handle, "status": "failed", "error": "NSFW"}
        )
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_PROVIDER_REJECTED
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_webhook_after_restart_settles_reserved_amount(
        self,
        orchestrator,
        session_factory,
        ledger,
        registry,
        pricing_settings,
        test_account,
        job_adapter,
    ):
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.RUNNING
        )
        # A second process that never saw the submission
        restarted = GenerationOrchestrator(session_factory, ledger, registry, pricing_settings)

        applied = await restarted.handle_webhook(
            "mockqueue", {"id": unit.job_handle, "status": "succeeded", "urls": ["https://a/v.mp4"]}
        )
        await orchestrator.drain()

        assert applied is True
        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.credits == Decimal("0.5")
        assert await _balance(ledger, session_factory) == Decimal("9.5")

    @pytest.mark.parametrize(
        ("provider", "payload"),
        [
            ("mockqueue", {"id": "mock-job-404-none", "status": "succeeded"}),
            ("mockqueue", {"status": "succeeded"}),
            ("mockqueue", "not json"),
            ("unknown-provider", {"id": "x", "status": "succeeded"}),
        ],
    )
    async def test_unmatched_webhooks_are_ignored(
        self, orchestrator, test_account, provider, payload
    ):
        assert await orchestrator.handle_webhook(provider, payload) is False

    async def test_non_terminal_webhook_is_ignored(
        self, orchestrator, session_factory, test_account, job_adapter
    ):
        submitted = await orchestrator.submit(TEST_USER_ID, _VIDEO)
        unit = await _wait_for_status(
            session_factory, submitted.units[0].id, GenerationStatus.RUNNING
        )

        applied = await orchestrator.handle_webhook(
            "mockqueue", {"id": unit.job_handle, "status": "running"}
        )

        assert applied is False
        unit = await fetch_unit(session_factory, unit.id)
        assert unit.status == GenerationStatus.RUNNING.value


class TestRecovery:
    """Units left unresolved by a previous process."""

    async def _orphan(
        self,
        session_factory,
        ledger,
        *,
        status: GenerationStatus,
        job_handle: str | None,
        link_reservation: bool,
    ) -> uuid.UUID:
        async with session_factory() as db:
            unit = await GenerationRepository.create(
                db,
                correlation_id=uuid.uuid4(),
                user_id=TEST_USER_ID,
                workspace_id=None,
                model_id="kling-video",
                generation_type="video",
                prompt="waves",
            )
            await db.commit()
        reservation = await ledger.reserve(_PERSONAL, Decimal("0.5"), unit.id)
        fields = {"started_at": utcnow(), "credit_source": "personal"}
        if job_handle is not None:
            fields["job_handle"] = job_handle
        if link_reservation:
            fields.update(reservation_id=reservation.id, credits=reservation.amount)
        async with session_factory() as db:
            await GenerationRepository.transition(
                db, unit.id, [GenerationStatus.PENDING], status, **fields
            )
            await db.commit()
        return unit.id

    async def test_job_with_handle_resumes_polling(
        self, orchestrator, session_factory, ledger, test_account, job_adapter
    ):
        job_adapter.statuses = [_SUCCEEDED]
        unit_id = await self._orphan(
            session_factory,
            ledger,
            status=GenerationStatus.RUNNING,
            job_handle="mock-job-7-kling-video",
            link_reservation=True,
        )

        assert await orchestrator.recover_interrupted() == 1
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, unit_id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.credits == Decimal("0.5")
        assert await _balance(ledger, session_factory) == Decimal("9.5")

    async def test_unit_without_handle_is_failed_and_refunded(
        self, orchestrator, session_factory, ledger, test_account
    ):
        # Crashed between reserve and recording the reservation on the unit
        unit_id = await self._orphan(
            session_factory,
            ledger,
            status=GenerationStatus.RESERVING,
            job_handle=None,
            link_reservation=False,
        )

        assert await orchestrator.recover_interrupted() == 1

        unit = await fetch_unit(session_factory, unit_id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_INTERNAL_ERROR
        assert await _balance(ledger, session_factory) == Decimal("10")
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []

    async def test_nothing_to_recover(self, orchestrator, test_account):
        assert await orchestrator.recover_interrupted() == 0
