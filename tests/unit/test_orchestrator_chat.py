"""Tests for streaming chat units.

Covers settlement from reported or estimated usage, mid-stream failures,
user cancellation, client disconnects, and the pre-stream credit check.
"""

import asyncio
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio

from omnigen.core.errors import (
    InsufficientCreditsError,
    InvalidStateError,
    ModelUnavailableError,
)
from omnigen.models import GenerationStatus
from omnigen.providers.errors import (
    REASON_CANCELLED,
    REASON_INSUFFICIENT_CREDITS,
    REASON_PROVIDER_UNAVAILABLE,
    REASON_TIMEOUT,
    ProviderUnavailable,
)
from omnigen.repositories.ledger_repository import LedgerRepository
from omnigen.schemas.chat import (
    ChatCompletionRequest,
    ChatDoneEvent,
    ChatErrorEvent,
    ChatTokenEvent,
)
from omnigen.schemas.generation import GenerationCreate
from omnigen.services.credit_source import CreditSource
from omnigen.services.generation_orchestrator import GenerationOrchestrator
from tests.conftest import TEST_USER_ID, fetch_unit

_PERSONAL = CreditSource.personal(TEST_USER_ID)

# "Say hi" is 2 estimated tokens; gpt-4o-mini caps output at 1000 tokens
# and costs 0.01 per 1K tokens, so the hold is (2 + 1000) / 1000 x 0.01.
_RESERVED = Decimal("0.01002")


def _chat_request(content: str = "Say hi", **kwargs) -> ChatCompletionRequest:
    return ChatCompletionRequest(
        model="gpt-4o-mini",
        messages=[{"role": "user", "content": content}],
        **kwargs,
    )


async def _balance(ledger, session_factory) -> Decimal:
    async with session_factory() as db:
        return await ledger.get_balance(db, _PERSONAL)


async def _collect(orchestrator, request=None):
    chat = await orchestrator.open_chat(TEST_USER_ID, request or _chat_request())
    events = [event async for event in chat.events]
    return chat, events


class TestCompletion:
    """Streams that finish normally."""

    async def test_tokens_then_done_with_settled_credits(
        self, orchestrator, session_factory, ledger, test_account
    ):
        chat, events = await _collect(orchestrator)

        assert [e.text for e in events if isinstance(e, ChatTokenEvent)] == [
            "Hello",
            ", ",
            "world",
        ]
        done = events[-1]
        assert isinstance(done, ChatDoneEvent)
        # 10 input + 3 output tokens at 0.01 per 1K
        assert done.credits == "0.00013000"
        assert done.balance == "9.99987000"
        assert (done.input_tokens, done.output_tokens) == (10, 3)
        assert done.cancelled is False
        assert done.generation_id == str(chat.generation_id)

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.type == "chat"
        assert unit.result["text"] == "Hello, world"
        assert unit.credits == Decimal("0.00013")
        assert await _balance(ledger, session_factory) == Decimal("9.99987")

    async def test_request_cap_lowers_reservation(
        self, orchestrator, session_factory, test_account, chat_adapter
    ):
        chat = await orchestrator.open_chat(
            TEST_USER_ID, _chat_request(max_output_tokens=50)
        )

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.credits == Decimal("0.00052")
        assert unit.status == GenerationStatus.DISPATCHED.value

        _ = [event async for event in chat.events]
        assert chat_adapter.calls[0].max_output_tokens == 50

    async def test_missing_usage_is_estimated_from_text(
        self, orchestrator, test_account, chat_adapter
    ):
        chat_adapter.report_usage = False

        _, events = await _collect(orchestrator)

        done = events[-1]
        assert isinstance(done, ChatDoneEvent)
        # "Say hi" -> 2 tokens, "Hello, world" -> 3 tokens
        assert (done.input_tokens, done.output_tokens) == (2, 3)
        assert done.credits == "0.00005000"

    async def test_charge_never_exceeds_reservation(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat_adapter.output_tokens = 50_000

        _, events = await _collect(orchestrator)

        assert events[-1].credits == f"{_RESERVED:.8f}"
        assert await _balance(ledger, session_factory) == Decimal("10") - _RESERVED

    async def test_stream_chat_yields_same_events(self, orchestrator, test_account):
        events = [
            event async for event in orchestrator.stream_chat(TEST_USER_ID, _chat_request())
        ]

        assert [e.type for e in events] == [
            "chat_token",
            "chat_token",
            "chat_token",
            "chat_done",
        ]


class TestFailures:
    """Streams that end in an error."""

    async def test_mid_stream_failure_refunds(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat_adapter.fail_after = 1
        chat_adapter.error = ProviderUnavailable("connection reset")

        chat, events = await _collect(orchestrator)

        assert isinstance(events[0], ChatTokenEvent)
        error = events[-1]
        assert isinstance(error, ChatErrorEvent)
        assert error.reason == REASON_PROVIDER_UNAVAILABLE
        assert "reset" not in error.message

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.credits == Decimal("0")
        assert await _balance(ledger, session_factory) == Decimal("10")
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []

    async def test_insufficient_credits_raises_before_streaming(
        self, orchestrator, ledger, session_factory, test_account, chat_adapter
    ):
        await ledger.reserve(_PERSONAL, Decimal("9.995"))

        with pytest.raises(InsufficientCreditsError):
            await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        assert chat_adapter.calls == []
        units, total = await orchestrator.list_units(TEST_USER_ID)
        assert total == 1
        assert units[0].error_type == REASON_INSUFFICIENT_CREDITS
        assert await _balance(ledger, session_factory) == Decimal("0.005")

    @pytest.mark.parametrize("model_id", ["flux-schnell", "no-such-model"])
    async def test_non_chat_model_is_unavailable(self, orchestrator, test_account, model_id):
        with pytest.raises(ModelUnavailableError):
            await orchestrator.open_chat(
                TEST_USER_ID,
                ChatCompletionRequest(
                    model=model_id, messages=[{"role": "user", "content": "hi"}]
                ),
            )


class TestCancellation:
    """User cancels and client disconnects."""

    async def test_cancel_after_output_bills_partial_transcript(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat_adapter.hang = True
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        events = []
        async for event in chat.events:
            events.append(event)
            if len(events) == 3:
                await orchestrator.cancel(TEST_USER_ID, chat.generation_id)

        done = events[-1]
        assert isinstance(done, ChatDoneEvent)
        assert done.cancelled is True
        # Estimated: 2 prompt tokens + 3 output tokens
        assert done.credits == "0.00005000"
        assert chat_adapter.closed is True

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.result["metadata"] == {"cancelled": True}
        assert await _balance(ledger, session_factory) == Decimal("9.99995")

    async def test_cancel_before_output_refunds(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat_adapter.tokens = []
        chat_adapter.hang = True
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        consumer = asyncio.create_task(_drain_events(chat.events))
        for _ in range(500):
            unit = await fetch_unit(session_factory, chat.generation_id)
            if unit.status == GenerationStatus.RUNNING.value:
                break
            await asyncio.sleep(0.01)
        await orchestrator.cancel(TEST_USER_ID, chat.generation_id)
        events = await asyncio.wait_for(consumer, timeout=5)

        error = events[-1]
        assert isinstance(error, ChatErrorEvent)
        assert error.reason == REASON_CANCELLED
        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_CANCELLED
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_client_disconnect_settles_partial_output(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat_adapter.hang = True
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        received = 0
        async for _event in chat.events:
            received += 1
            if received == 2:
                break
        await chat.events.aclose()
        await orchestrator.drain()

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.COMPLETED.value
        assert unit.result["text"] == "Hello, "
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []
        assert await _balance(ledger, session_factory) < Decimal("10")

    async def test_opened_but_never_streamed_is_refunded_on_shutdown(
        self, orchestrator, session_factory, ledger, test_account
    ):
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())
        assert await _balance(ledger, session_factory) == Decimal("10") - _RESERVED

        await orchestrator.shutdown()

        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.error_type == REASON_CANCELLED
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_cancel_before_streaming_refunds_immediately(
        self, orchestrator, session_factory, ledger, test_account, chat_adapter
    ):
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        unit = await orchestrator.cancel(TEST_USER_ID, chat.generation_id)

        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_CANCELLED
        assert await _balance(ledger, session_factory) == Decimal("10")
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []

        # A late consumer gets the outcome without reaching the provider
        events = [event async for event in chat.events]
        assert len(events) == 1
        assert isinstance(events[0], ChatErrorEvent)
        assert events[0].reason == REASON_CANCELLED
        assert chat_adapter.calls == []
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_cancelling_twice_before_streaming_refunds_once(
        self, orchestrator, session_factory, ledger, test_account
    ):
        chat = await orchestrator.open_chat(TEST_USER_ID, _chat_request())

        await orchestrator.cancel(TEST_USER_ID, chat.generation_id)
        unit = await orchestrator.cancel(TEST_USER_ID, chat.generation_id)

        assert unit.status == GenerationStatus.FAILED.value
        async with session_factory() as db:
            entries, _ = await ledger.list_entries(db, _PERSONAL)
        assert [e.operation for e in entries].count("refund") == 1
        assert await _balance(ledger, session_factory) == Decimal("10")

    async def test_cancel_resolved_chat_returns_it_unchanged(
        self, orchestrator, test_account
    ):
        chat, _ = await _collect(orchestrator)

        unit = await orchestrator.cancel(TEST_USER_ID, chat.generation_id)

        assert unit.status == GenerationStatus.COMPLETED.value

    async def test_image_units_cannot_be_cancelled(self, orchestrator, test_account):
        submitted = await orchestrator.submit(
            TEST_USER_ID,
            GenerationCreate(models=["sdxl"], type="image", prompt="a cat"),
        )
        await orchestrator.drain()

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel(TEST_USER_ID, submitted.units[0].id)


@pytest_asyncio.fixture
async def quick_expiry_orchestrator(
    session_factory, ledger, registry, pricing_settings
) -> AsyncGenerator[GenerationOrchestrator, None]:
    """Orchestrator that expires unconsumed chats after 50ms."""
    orchestrator = GenerationOrchestrator(
        session_factory,
        ledger,
        registry,
        pricing_settings,
        chat_max_output_tokens=500,
        chat_start_timeout=0.05,
    )
    yield orchestrator
    await orchestrator.shutdown()


class TestStartTimeout:
    """Chats whose stream is never consumed."""

    async def test_unconsumed_chat_expires_and_refunds(
        self, quick_expiry_orchestrator, session_factory, ledger, test_account
    ):
        chat = await quick_expiry_orchestrator.open_chat(TEST_USER_ID, _chat_request())
        assert await _balance(ledger, session_factory) == Decimal("10") - _RESERVED

        for _ in range(500):
            unit = await fetch_unit(session_factory, chat.generation_id)
            if unit.status == GenerationStatus.FAILED.value:
                break
            await asyncio.sleep(0.01)

        assert unit.status == GenerationStatus.FAILED.value
        assert unit.error_type == REASON_TIMEOUT
        assert await _balance(ledger, session_factory) == Decimal("10")
        async with session_factory() as db:
            assert await LedgerRepository.list_held(db) == []

        events = [event async for event in chat.events]
        assert [type(e) for e in events] == [ChatErrorEvent]
        assert events[0].reason == REASON_TIMEOUT

    async def test_consumed_chat_is_not_expired(
        self, quick_expiry_orchestrator, session_factory, ledger, test_account
    ):
        chat, events = await _collect(quick_expiry_orchestrator)
        await asyncio.sleep(0.2)

        assert isinstance(events[-1], ChatDoneEvent)
        unit = await fetch_unit(session_factory, chat.generation_id)
        assert unit.status == GenerationStatus.COMPLETED.value
        async with session_factory() as db:
            entries, _ = await ledger.list_entries(db, _PERSONAL)
        assert "refund" not in [e.operation for e in entries]


async def _drain_events(events) -> list:
    return [event async for event in events]
