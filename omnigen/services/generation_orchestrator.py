"""Generation orchestrator.

Turns a user request into provider calls and credit movements.

Image and video requests fan out to up to ``max_fan_out`` models. Each
(request, model) pair becomes a generation unit driven by its own task:

    pending -> reserving -> dispatched -> (queued <-> running) -> completed | failed

A unit reserves its estimated credits before any provider is contacted,
then settles on success or refunds on failure. Resolution goes through
``GenerationRepository.transition``; only the caller that wins the
transition touches the ledger, so a poll loop and a webhook delivering the
same result cannot settle twice.

Chat requests stream. ``open_chat`` validates and reserves before the
response starts (so insufficient credits surface as an HTTP error), then
returns an event iterator that yields ``chat_token`` events and ends with
``chat_done`` or ``chat_error``.
"""

import asyncio
import functools
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.core.errors import (
    ConfigurationError,
    FanOutLimitError,
    InsufficientCreditsError,
    InvalidStateError,
    ModelUnavailableError,
    NotFoundError,
    ValidationError,
)
from omnigen.models.base import utcnow
from omnigen.models.catalog import AIModel
from omnigen.models.generation import (
    IN_FLIGHT_STATUSES,
    UNRESOLVED_STATUSES,
    Generation,
    GenerationStatus,
)
from omnigen.providers.base import (
    AsyncJobAdapter,
    ChatMessage,
    GenerationAdapter,
    GenerationRequest,
    GenerationResult,
    JobHandle,
    JobState,
    JobStatus,
    StreamEvent,
    StreamingAdapter,
    SyncAdapter,
)
from omnigen.providers.errors import (
    REASON_CANCELLED,
    REASON_CONFIGURATION_ERROR,
    REASON_INSUFFICIENT_CREDITS,
    REASON_INTERNAL_ERROR,
    REASON_PROVIDER_REJECTED,
    REASON_TIMEOUT,
    USER_MESSAGES,
    ProviderError,
    ProviderUnavailable,
)
from omnigen.providers.factory import AdapterRegistry
from omnigen.providers.retry import with_retries
from omnigen.repositories.catalog_repository import CatalogRepository
from omnigen.repositories.generation_repository import GenerationRepository
from omnigen.repositories.ledger_repository import LedgerRepository
from omnigen.schemas.chat import (
    ChatCompletionRequest,
    ChatDoneEvent,
    ChatErrorEvent,
    ChatTokenEvent,
    SSEEvent,
)
from omnigen.schemas.generation import GenerationCreate
from omnigen.services.credit_ledger import CreditLedger, InsufficientCredits
from omnigen.services.credit_source import CreditSource, resolve_credit_source
from omnigen.services.pricing import (
    PricingSettings,
    calculate_chat_credits,
    calculate_credits,
    estimate_chat_reservation,
    estimate_tokens,
)
from omnigen.services.pricing_settings import PricingSettingsProvider

logger = logging.getLogger(__name__)

_DECIMAL_FMT = "{:.8f}"


# =============================================================================
# Result types
# =============================================================================


@dataclass
class SubmittedUnit:
    """A unit created by ``submit``."""

    id: uuid.UUID
    model_id: str
    status: str


@dataclass
class SubmitResult:
    """Correlation id and units of one fan-out submission."""

    correlation_id: uuid.UUID
    units: list[SubmittedUnit]


@dataclass
class ChatStream:
    """An opened chat completion.

    Attributes:
        generation_id: The chat unit.
        events: SSE events; iterate to drive the stream.
    """

    generation_id: uuid.UUID
    events: AsyncIterator[SSEEvent]


@dataclass
class _UnitContext:
    """In-memory state a unit task carries between steps.

    ``settings`` is the pricing snapshot taken at reservation time; it is
    None for units rebuilt from the database after a restart, which then
    settle at the amount they reserved. ``provider`` is the catalog
    provider that accepted the unit.
    """

    generation_id: uuid.UUID
    user_id: uuid.UUID
    model: AIModel
    source: CreditSource
    request: GenerationRequest
    reservation_id: uuid.UUID | None = None
    reserved: Decimal = Decimal("0")
    settings: PricingSettings | None = None
    handle: JobHandle | None = None
    provider: str | None = None


@dataclass
class _ChatProgress:
    parts: list[str] = field(default_factory=list)
    done: bool = False
    cancelled: bool = False
    reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    pending_next: "asyncio.Future[StreamEvent] | None" = None
    resolved: bool = False


def _as_aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _failure_reason(reason: str | None) -> str:
    return reason if reason in USER_MESSAGES else REASON_PROVIDER_REJECTED


class GenerationOrchestrator:
    """Drives generation units from submission to settlement.

    Args:
        session_factory: Callable returning a new AsyncSession context.
        ledger: Credit ledger (sole writer of balances).
        registry: Resolves catalog models to adapters.
        pricing_settings: Source of pricing snapshots.
        max_fan_out: Most models one submission may target.
        poll_interval: Seconds between job status polls.
        max_wait: Default wall-clock budget for provider jobs, in seconds.
            A model's ``max_wait_seconds`` overrides it.
        chat_max_output_tokens: Output cap for chat models that define none.
        chat_start_timeout: Seconds an opened chat may wait for its stream to
            be consumed before it is failed and refunded.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        ledger: CreditLedger,
        registry: AdapterRegistry,
        pricing_settings: PricingSettingsProvider,
        *,
        max_fan_out: int = 4,
        poll_interval: float = 3.0,
        max_wait: float = 600.0,
        chat_max_output_tokens: int = 4096,
        chat_start_timeout: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._registry = registry
        self._pricing_settings = pricing_settings
        self._max_fan_out = max_fan_out
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._chat_max_output_tokens = chat_max_output_tokens
        self._chat_start_timeout = chat_start_timeout

        self._tasks: dict[uuid.UUID, asyncio.Task[None]] = {}
        self._contexts: dict[uuid.UUID, _UnitContext] = {}
        self._chat_cancels: dict[uuid.UUID, asyncio.Event] = {}
        self._chat_watchdogs: dict[uuid.UUID, asyncio.Task[None]] = {}
        self._background: set[asyncio.Future[Any]] = set()

    # =========================================================================
    # Submission (image / video)
    # =========================================================================

    async def submit(self, user_id: uuid.UUID, request: GenerationCreate) -> SubmitResult:
        """Create one unit per requested model and start them.

        Args:
            user_id: Requesting user.
            request: Validated request body.

        Returns:
            SubmitResult with the shared correlation id and the units.

        Raises:
            FanOutLimitError: More models than ``max_fan_out``.
            ValidationError: Duplicate model ids or options for a model
                that was not requested.
            ModelUnavailableError: Unknown, disabled, or wrong-type model.
            NotFoundError: Workspace missing or user not a member.
        """
        model_ids = request.models
        if len(model_ids) > self._max_fan_out:
            raise FanOutLimitError(len(model_ids), self._max_fan_out)
        if len(set(model_ids)) != len(model_ids):
            raise ValidationError("Each model may appear only once per request")
        stray = sorted(set(request.options) - set(model_ids))
        if stray:
            raise ValidationError(
                "Options given for models that were not requested",
                details=[{"field": "options", "models": stray}],
            )

        correlation_id = uuid.uuid4()
        contexts: list[_UnitContext] = []
        async with self._session_factory() as db:
            models = await CatalogRepository.get_models(db, model_ids)
            for model_id in model_ids:
                self._check_model(models.get(model_id), model_id, request.type)
            source = await resolve_credit_source(db, user_id, request.workspace_id)

            for model_id in model_ids:
                model = models[model_id]
                options = dict(request.options.get(model_id, {}))
                generation = await GenerationRepository.create(
                    db,
                    correlation_id=correlation_id,
                    user_id=user_id,
                    workspace_id=request.workspace_id,
                    model_id=model_id,
                    generation_type=request.type,
                    prompt=request.prompt,
                    options=options,
                    input_images=list(request.input_images),
                    quantity=request.quantity,
                )
                contexts.append(
                    _UnitContext(
                        generation_id=generation.id,
                        user_id=user_id,
                        model=model,
                        source=source,
                        request=GenerationRequest(
                            model_id=model_id,
                            endpoint=model.endpoint,
                            generation_type=request.type,
                            prompt=request.prompt,
                            options=options,
                            quantity=request.quantity,
                            input_images=list(request.input_images),
                        ),
                    )
                )
            await db.commit()

        for ctx in contexts:
            self._launch(ctx, self._execute_unit(ctx))

        logger.info(
            "Submitted %s request %s for user %s: %d unit(s) on %s",
            request.type,
            correlation_id,
            user_id,
            len(contexts),
            ", ".join(model_ids),
        )
        return SubmitResult(
            correlation_id=correlation_id,
            units=[
                SubmittedUnit(
                    id=ctx.generation_id,
                    model_id=ctx.request.model_id,
                    status=GenerationStatus.PENDING.value,
                )
                for ctx in contexts
            ],
        )

    @staticmethod
    def _check_model(
        model: AIModel | None, model_id: str, generation_type: str
    ) -> AIModel:
        if model is None:
            raise ModelUnavailableError(model_id, "does not exist")
        if not model.enabled:
            raise ModelUnavailableError(model_id, "is disabled")
        if model.type != generation_type:
            raise ModelUnavailableError(
                model_id, f"is a {model.type} model, not {generation_type}"
            )
        return model

    # =========================================================================
    # Unit tasks
    # =========================================================================

    def _launch(self, ctx: _UnitContext, work: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(self._run_unit(ctx, work))
        self._tasks[ctx.generation_id] = task
        self._contexts[ctx.generation_id] = ctx
        task.add_done_callback(lambda _t, uid=ctx.generation_id: self._forget(uid))

    def _forget(self, generation_id: uuid.UUID) -> None:
        self._tasks.pop(generation_id, None)
        self._contexts.pop(generation_id, None)

    async def _run_unit(self, ctx: _UnitContext, work: Awaitable[None]) -> None:
        """Run a unit step sequence; any escape fails the unit and refunds."""
        try:
            await work
        except asyncio.CancelledError:
            logger.info("Unit %s cancelled", ctx.generation_id)
            await asyncio.shield(self._abort_unit(ctx, REASON_CANCELLED, "task cancelled"))
            raise
        except Exception as e:
            logger.exception("Unit %s failed unexpectedly", ctx.generation_id)
            await self._abort_unit(ctx, REASON_INTERNAL_ERROR, repr(e))

    async def _abort_unit(self, ctx: _UnitContext, reason: str, detail: str) -> None:
        try:
            failed = await self._fail_unit(ctx, reason, detail)
        except Exception:
            logger.exception(
                "Unit %s could not be failed; reservation %s left held",
                ctx.generation_id,
                ctx.reservation_id,
            )
            return
        if failed and ctx.handle is not None:
            adapter = self._registry.for_provider(ctx.handle.provider)
            if isinstance(adapter, AsyncJobAdapter):
                await self._cancel_job(adapter, ctx.handle)

    async def _execute_unit(self, ctx: _UnitContext) -> None:
        if not await self._move(
            ctx.generation_id,
            [GenerationStatus.PENDING],
            GenerationStatus.RESERVING,
            started_at=utcnow(),
        ):
            return

        try:
            candidates = self._registry.route(ctx.model)
            settings = await self._pricing_settings.get()
            estimate = calculate_credits(
                ctx.model.base_cost,
                ctx.request.generation_type,
                settings,
                selected_options=ctx.request.options,
                model_options=ctx.model.options,
                quantity=ctx.request.quantity,
            )
        except ConfigurationError as e:
            logger.error("Unit %s: %s", ctx.generation_id, e.detail)
            await self._fail_unit(ctx, REASON_CONFIGURATION_ERROR, e.detail)
            return
        except ProviderUnavailable as e:
            logger.warning("Unit %s: %s", ctx.generation_id, e)
            await self._fail_unit(ctx, e.reason, str(e))
            return
        streaming = [
            provider
            for provider, adapter in candidates
            if not isinstance(adapter, SyncAdapter | AsyncJobAdapter)
        ]
        if streaming:
            detail = (
                f"model '{ctx.model.id}' resolves to a streaming adapter "
                f"via {', '.join(streaming)}"
            )
            logger.error("Unit %s: %s", ctx.generation_id, detail)
            await self._fail_unit(ctx, REASON_CONFIGURATION_ERROR, detail)
            return

        try:
            reservation = await self._ledger.reserve(
                ctx.source, estimate, generation_id=ctx.generation_id
            )
        except InsufficientCredits as e:
            await self._fail_unit(ctx, REASON_INSUFFICIENT_CREDITS, str(e))
            return
        ctx.reservation_id = reservation.id
        ctx.reserved = reservation.amount
        ctx.settings = settings

        if not await self._move(
            ctx.generation_id,
            [GenerationStatus.RESERVING],
            GenerationStatus.DISPATCHED,
            credits=reservation.amount,
            credit_source=ctx.source.kind,
            reservation_id=reservation.id,
        ):
            # Resolved elsewhere between reserve and dispatch; release the hold.
            async with self._session_factory() as db:
                await self._ledger.refund(db, reservation.id)
                await db.commit()
            return

        await self._dispatch(ctx, candidates)

    async def _dispatch(
        self,
        ctx: _UnitContext,
        candidates: list[tuple[str, GenerationAdapter]],
    ) -> None:
        """Hand the unit to the first provider in the chain that accepts it.

        A provider still unavailable after its retries is marked with the
        health tracker and the next healthy provider is tried; the unit keeps
        its reservation throughout. Any other provider error fails the unit.
        """
        health = self._registry.health
        last_error: ProviderError | None = None
        for provider, adapter in candidates:
            if last_error is not None:
                if not health.is_healthy(provider):
                    continue
                logger.warning(
                    "Unit %s: failing over to %s after: %s",
                    ctx.generation_id,
                    provider,
                    last_error,
                )
            try:
                outcome = await with_retries(
                    functools.partial(adapter.submit, ctx.request),
                    self._registry.config,
                    label=f"Unit {ctx.generation_id}: {provider} submit",
                )
            except ProviderUnavailable as e:
                health.mark_failure(provider)
                last_error = e
                continue
            except ProviderError as e:
                logger.warning(
                    "Unit %s: %s submit failed (%s): %s",
                    ctx.generation_id,
                    provider,
                    e.reason,
                    e,
                )
                await self._fail_unit(ctx, e.reason, str(e))
                return

            health.mark_success(provider)
            ctx.provider = provider
            if isinstance(adapter, SyncAdapter):
                await self._complete_unit(ctx, outcome)
            else:
                await self._track_job(ctx, adapter, outcome)
            return

        error = last_error or ProviderUnavailable("no healthy provider left")
        logger.warning(
            "Unit %s: every provider for %s failed: %s",
            ctx.generation_id,
            ctx.model.id,
            error,
        )
        await self._fail_unit(ctx, error.reason, str(error))

    async def _track_job(
        self, ctx: _UnitContext, adapter: AsyncJobAdapter, handle: JobHandle
    ) -> None:
        ctx.handle = handle

        if not await self._move(
            ctx.generation_id,
            [GenerationStatus.DISPATCHED],
            GenerationStatus.QUEUED,
            job_handle=handle.handle_id,
            provider=ctx.provider,
        ):
            await self._cancel_job(adapter, handle)
            return

        deadline = asyncio.get_running_loop().time() + self._wait_budget(ctx.model)
        await self._poll_job(ctx, adapter, handle, deadline)

    def _wait_budget(self, model: AIModel) -> float:
        return float(model.max_wait_seconds or self._max_wait)

    async def _poll_job(
        self,
        ctx: _UnitContext,
        adapter: AsyncJobAdapter,
        handle: JobHandle,
        deadline: float,
    ) -> None:
        """Poll a provider job until it resolves or the wait budget runs out."""
        loop = asyncio.get_running_loop()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                budget = self._wait_budget(ctx.model)
                if await self._fail_unit(ctx, REASON_TIMEOUT, f"no result within {budget}s"):
                    logger.warning(
                        "Unit %s timed out after %ss (job %s)",
                        ctx.generation_id,
                        budget,
                        handle.handle_id,
                    )
                    await self._cancel_job(adapter, handle)
                return

            await asyncio.sleep(min(self._poll_interval, remaining))
            try:
                status = await adapter.status(handle)
            except ProviderUnavailable as e:
                logger.warning("Unit %s: status poll failed: %s", ctx.generation_id, e)
                continue
            except ProviderError as e:
                await self._fail_unit(ctx, e.reason, str(e))
                return

            if not await self._apply_job_status(ctx, status):
                return

    async def _apply_job_status(self, ctx: _UnitContext, status: JobStatus) -> bool:
        """Record a job status.

        Returns:
            True while the unit is still in flight, False once it is resolved.
        """
        if status.state is JobState.SUCCEEDED:
            await self._complete_unit(ctx, status.result or GenerationResult())
            return False
        if status.state is JobState.FAILED:
            logger.info(
                "Unit %s: provider reported failure: %s", ctx.generation_id, status.error
            )
            await self._fail_unit(
                ctx, _failure_reason(status.error_reason), status.error or ""
            )
            return False

        to_status = (
            GenerationStatus.QUEUED
            if status.state is JobState.QUEUED
            else GenerationStatus.RUNNING
        )
        return await self._move(
            ctx.generation_id,
            IN_FLIGHT_STATUSES,
            to_status,
            progress=status.queue_position,
        )

    async def _cancel_job(self, adapter: AsyncJobAdapter, handle: JobHandle) -> None:
        try:
            await adapter.cancel(handle)
        except Exception as e:
            logger.warning("Provider cancel of job %s failed: %s", handle.handle_id, e)

    # =========================================================================
    # Resolution
    # =========================================================================

    async def _move(
        self,
        generation_id: uuid.UUID,
        from_statuses: Iterable[GenerationStatus],
        to_status: GenerationStatus,
        **fields: Any,
    ) -> bool:
        async with self._session_factory() as db:
            moved = await GenerationRepository.transition(
                db, generation_id, from_statuses, to_status, **fields
            )
            await db.commit()
        return moved

    def _actual_credits(self, ctx: _UnitContext) -> Decimal:
        if ctx.settings is None:
            return ctx.reserved
        return calculate_credits(
            ctx.model.base_cost,
            ctx.request.generation_type,
            ctx.settings,
            selected_options=ctx.request.options,
            model_options=ctx.model.options,
            quantity=ctx.request.quantity,
        )

    async def _complete_unit(
        self,
        ctx: _UnitContext,
        result: GenerationResult,
        credits: Decimal | None = None,
    ) -> bool:
        """Mark a unit completed and settle its reservation in one transaction.

        Returns:
            True if this call completed the unit; False if it was already
            resolved (late webhook or late poll).
        """
        if credits is None:
            credits = self._actual_credits(ctx)
        async with self._session_factory() as db:
            moved = await GenerationRepository.transition(
                db,
                ctx.generation_id,
                IN_FLIGHT_STATUSES,
                GenerationStatus.COMPLETED,
                result=result.to_payload(),
                credits=credits,
                provider=ctx.provider or ctx.model.provider,
                progress=None,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                completed_at=utcnow(),
            )
            if moved and ctx.reservation_id is not None:
                await self._ledger.settle(db, ctx.reservation_id, credits)
            await db.commit()

        if moved:
            logger.info(
                "Unit %s (%s) completed: %s credits",
                ctx.generation_id,
                ctx.model.id,
                credits,
            )
        else:
            logger.debug("Unit %s already resolved; completion ignored", ctx.generation_id)
        return moved

    async def _fail_unit(
        self,
        ctx: _UnitContext,
        reason: str,
        detail: str,
        *,
        from_statuses: Iterable[GenerationStatus] = UNRESOLVED_STATUSES,
    ) -> bool:
        """Mark a unit failed and refund whatever it holds, in one transaction.

        ``detail`` is the raw cause and goes to the log only; the unit stores
        the generic message of ``reason``.

        Returns:
            True if this call failed the unit; False if it was already resolved
            or not in one of ``from_statuses``.
        """
        async with self._session_factory() as db:
            moved = await GenerationRepository.transition(
                db,
                ctx.generation_id,
                from_statuses,
                GenerationStatus.FAILED,
                error=USER_MESSAGES[reason],
                error_type=reason,
                credits=Decimal("0"),
                progress=None,
                completed_at=utcnow(),
            )
            if moved:
                if ctx.reservation_id is not None:
                    await self._ledger.refund(db, ctx.reservation_id)
                else:
                    for held in await LedgerRepository.list_held(
                        db, generation_id=ctx.generation_id
                    ):
                        await self._ledger.refund(db, held.id)
            await db.commit()

        if moved:
            logger.info(
                "Unit %s (%s) failed with %s: %s",
                ctx.generation_id,
                ctx.model.id,
                reason,
                detail,
            )
        return moved

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(self, provider: str, payload: Any) -> bool:
        """Resolve a unit from a provider callback.

        Unknown providers, malformed payloads, unknown handles, and
        non-terminal statuses are ignored. A callback for a unit that is
        already resolved changes nothing.

        Returns:
            True if the payload referred to a known unit and was applied.
        """
        adapter = self._registry.for_provider(provider)
        if not isinstance(adapter, AsyncJobAdapter):
            logger.debug("Webhook for unknown provider %r ignored", provider)
            return False

        parsed = adapter.parse_webhook(payload)
        if parsed is None:
            logger.debug("Unrecognized %s webhook payload ignored", provider)
            return False
        handle_id, status = parsed
        if not status.is_terminal:
            logger.debug("Non-terminal %s webhook for %s ignored", provider, handle_id)
            return False

        async with self._session_factory() as db:
            generation = await GenerationRepository.get_by_job_handle(db, handle_id)
            if generation is None:
                logger.debug("Webhook for unknown %s job %s ignored", provider, handle_id)
                return False
            ctx = self._contexts.get(generation.id)
            if ctx is None:
                ctx = await self._context_from_row(db, generation)
        if ctx is None:
            return False

        await self._apply_job_status(ctx, status)
        return True

    async def _context_from_row(
        self, db: AsyncSession, generation: Generation
    ) -> _UnitContext | None:
        model = await CatalogRepository.get_model(db, generation.model_id)
        if model is None:
            logger.error(
                "Unit %s references missing model %s", generation.id, generation.model_id
            )
            return None
        source = CreditSource(
            kind=generation.credit_source or "personal",
            user_id=generation.user_id,
            workspace_id=generation.workspace_id,
        )
        return _UnitContext(
            generation_id=generation.id,
            user_id=generation.user_id,
            model=model,
            source=source,
            request=GenerationRequest(
                model_id=generation.model_id,
                endpoint=model.endpoint,
                generation_type=generation.type,
                prompt=generation.prompt,
                options=dict(generation.options or {}),
                quantity=generation.quantity,
                input_images=list(generation.input_images or []),
            ),
            reservation_id=generation.reservation_id,
            reserved=Decimal(generation.credits or 0),
            provider=generation.provider,
        )

    # =========================================================================
    # Chat (streaming)
    # =========================================================================

    async def open_chat(
        self, user_id: uuid.UUID, request: ChatCompletionRequest
    ) -> ChatStream:
        """Validate, reserve, and prepare a chat completion stream.

        Everything that can be rejected is rejected here, before the caller
        starts sending a response.

        Raises:
            ModelUnavailableError: Unknown, disabled, or non-chat model.
            NotFoundError: Workspace missing or user not a member.
            ConfigurationError: Model has no usable streaming adapter, or
                the pricing settings are unusable.
            InsufficientCreditsError: The resolved source cannot cover the
                upper-bound estimate.
        """
        async with self._session_factory() as db:
            model = self._check_model(
                await CatalogRepository.get_model(db, request.model), request.model, "chat"
            )
            source = await resolve_credit_source(db, user_id, request.workspace_id)

        adapter = self._registry.get(model)
        if not isinstance(adapter, StreamingAdapter):
            raise ConfigurationError(f"model '{model.id}' has no streaming adapter")

        settings = await self._pricing_settings.get()
        caps = [
            cap
            for cap in (request.max_output_tokens, model.max_output_tokens)
            if cap is not None
        ]
        max_output_tokens = min(caps) if caps else self._chat_max_output_tokens
        messages = [ChatMessage(role=m.role, content=m.content) for m in request.messages]
        prompt_text = "\n".join(m.content for m in messages)
        estimate = estimate_chat_reservation(
            model.base_cost, prompt_text, max_output_tokens, settings
        )

        async with self._session_factory() as db:
            generation = await GenerationRepository.create(
                db,
                correlation_id=uuid.uuid4(),
                user_id=user_id,
                workspace_id=request.workspace_id,
                model_id=model.id,
                generation_type="chat",
                prompt=messages[-1].content,
                options={"max_output_tokens": max_output_tokens},
            )
            await GenerationRepository.transition(
                db,
                generation.id,
                [GenerationStatus.PENDING],
                GenerationStatus.RESERVING,
                started_at=utcnow(),
            )
            await db.commit()

        ctx = _UnitContext(
            generation_id=generation.id,
            user_id=user_id,
            model=model,
            source=source,
            request=GenerationRequest(
                model_id=model.id,
                endpoint=model.endpoint,
                generation_type="chat",
                prompt=messages[-1].content,
                messages=messages,
                max_output_tokens=max_output_tokens,
            ),
            settings=settings,
        )

        try:
            reservation = await self._ledger.reserve(source, estimate, generation.id)
        except InsufficientCredits as e:
            await self._fail_unit(ctx, REASON_INSUFFICIENT_CREDITS, str(e))
            raise InsufficientCreditsError(e.available, e.requested) from e
        ctx.reservation_id = reservation.id
        ctx.reserved = reservation.amount

        if not await self._move(
            generation.id,
            [GenerationStatus.RESERVING],
            GenerationStatus.DISPATCHED,
            credits=reservation.amount,
            credit_source=source.kind,
            reservation_id=reservation.id,
        ):
            async with self._session_factory() as db:
                await self._ledger.refund(db, reservation.id)
                await db.commit()
            raise InvalidStateError("The generation was cancelled before it started")

        cancel_event = asyncio.Event()
        self._chat_cancels[generation.id] = cancel_event
        self._contexts[generation.id] = ctx
        self._chat_watchdogs[generation.id] = asyncio.ensure_future(
            self._expire_unstarted_chat(ctx)
        )
        logger.info(
            "Chat %s opened on %s for user %s (reserved %s)",
            generation.id,
            model.id,
            user_id,
            reservation.amount,
        )
        return ChatStream(
            generation_id=generation.id,
            events=self._chat_events(ctx, adapter, cancel_event),
        )

    async def stream_chat(
        self, user_id: uuid.UUID, request: ChatCompletionRequest
    ) -> AsyncIterator[SSEEvent]:
        """Open a chat completion and yield its events."""
        chat = await self.open_chat(user_id, request)
        async for event in chat.events:
            yield event

    async def _chat_events(
        self,
        ctx: _UnitContext,
        adapter: StreamingAdapter,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[SSEEvent]:
        progress = _ChatProgress()
        stream = adapter.open(ctx.request)
        final: SSEEvent | None = None
        try:
            self._stop_watchdog(ctx.generation_id)
            # Losing this transition means cancel() or the start watchdog
            # already failed and refunded the unit.
            progress.resolved = not await self._move(
                ctx.generation_id, [GenerationStatus.DISPATCHED], GenerationStatus.RUNNING
            )
            while not progress.resolved:
                event = await self._next_stream_event(stream, cancel_event, progress)
                if event is None:
                    progress.cancelled = True
                    break
                if event.done:
                    progress.done = True
                    progress.input_tokens = event.input_tokens
                    progress.output_tokens = event.output_tokens
                    break
                if event.text:
                    progress.parts.append(event.text)
                    yield ChatTokenEvent(text=event.text)
        except ProviderError as e:
            logger.warning(
                "Chat %s: %s stream failed (%s): %s",
                ctx.generation_id,
                adapter.provider_name,
                e.reason,
                e,
            )
            progress.reason = e.reason
        except Exception:
            logger.exception("Chat %s failed unexpectedly", ctx.generation_id)
            progress.reason = REASON_INTERNAL_ERROR
        finally:
            # Client disconnects cancel this generator; settlement runs in its
            # own task so it finishes regardless.
            finish = self._spawn(self._finish_chat(ctx, stream, progress))
            final = await asyncio.shield(finish)

        if final is not None:
            yield final

    @staticmethod
    async def _next_stream_event(
        stream: AsyncIterator[StreamEvent],
        cancel_event: asyncio.Event,
        progress: _ChatProgress,
    ) -> StreamEvent | None:
        """Next stream event, or None if the chat was cancelled first."""
        if cancel_event.is_set():
            return None
        next_event: asyncio.Future[StreamEvent] = asyncio.ensure_future(anext(stream))
        progress.pending_next = next_event
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({next_event, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if not next_event.done():
            return None
        progress.pending_next = None
        try:
            return next_event.result()
        except StopAsyncIteration:
            return StreamEvent(done=True)

    async def _finish_chat(
        self,
        ctx: _UnitContext,
        stream: AsyncIterator[StreamEvent],
        progress: _ChatProgress,
    ) -> SSEEvent | None:
        """Close the upstream stream, then settle or refund the chat unit."""
        self._release_chat(ctx.generation_id)

        pending = progress.pending_next
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        try:
            await stream.aclose()  # type: ignore[attr-defined]
        except Exception as e:
            logger.warning("Chat %s: closing upstream stream failed: %s", ctx.generation_id, e)

        if progress.resolved:
            async with self._session_factory() as db:
                generation = await db.get(Generation, ctx.generation_id)
            stored = generation.error_type if generation is not None else None
            reason = stored if stored in USER_MESSAGES else REASON_CANCELLED
            return ChatErrorEvent(
                generation_id=str(ctx.generation_id),
                reason=reason,
                message=USER_MESSAGES[reason],
            )

        if progress.reason is None and not progress.done:
            progress.cancelled = True
        generation_id = str(ctx.generation_id)

        if progress.reason is not None or (progress.cancelled and not progress.parts):
            reason = progress.reason or REASON_CANCELLED
            await self._fail_unit(ctx, reason, "chat stream ended without usable output")
            return ChatErrorEvent(
                generation_id=generation_id, reason=reason, message=USER_MESSAGES[reason]
            )

        text = "".join(progress.parts)
        input_tokens = progress.input_tokens
        if input_tokens is None:
            input_tokens = estimate_tokens("\n".join(m.content for m in ctx.request.messages))
        output_tokens = progress.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(text)

        settings = ctx.settings or await self._pricing_settings.get()
        credits = calculate_chat_credits(
            ctx.model.base_cost, input_tokens, output_tokens, settings
        )
        if credits > ctx.reserved:
            # Provider token counts can exceed the character-based estimate.
            logger.warning(
                "Chat %s used %s credits, above the %s reserved; charging the reservation",
                ctx.generation_id,
                credits,
                ctx.reserved,
            )
            credits = ctx.reserved
        result = GenerationResult(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            metadata={"cancelled": True} if progress.cancelled else {},
        )
        if not await self._complete_unit(ctx, result, credits=credits):
            return ChatErrorEvent(
                generation_id=generation_id,
                reason=REASON_CANCELLED,
                message=USER_MESSAGES[REASON_CANCELLED],
            )

        async with self._session_factory() as db:
            balance = await self._ledger.get_balance(db, ctx.source)
        return ChatDoneEvent(
            generation_id=generation_id,
            credits=_DECIMAL_FMT.format(credits),
            balance=_DECIMAL_FMT.format(balance),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cancelled=progress.cancelled,
        )

    def _spawn(self, work: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(work)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _stop_watchdog(self, generation_id: uuid.UUID) -> None:
        watchdog = self._chat_watchdogs.pop(generation_id, None)
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()

    def _release_chat(self, generation_id: uuid.UUID) -> None:
        self._stop_watchdog(generation_id)
        self._chat_cancels.pop(generation_id, None)
        self._contexts.pop(generation_id, None)

    async def _expire_unstarted_chat(self, ctx: _UnitContext) -> None:
        """Fail and refund a chat whose stream is not consumed in time.

        Covers a client that disconnects before the response body is read:
        the event generator never starts, so nothing else resolves the unit.
        """
        await asyncio.sleep(self._chat_start_timeout)
        self._chat_watchdogs.pop(ctx.generation_id, None)
        try:
            failed = await self._fail_unit(
                ctx,
                REASON_TIMEOUT,
                f"stream not started within {self._chat_start_timeout}s",
                from_statuses=[GenerationStatus.DISPATCHED],
            )
        except Exception:
            logger.exception(
                "Chat %s could not be expired; reservation %s left held",
                ctx.generation_id,
                ctx.reservation_id,
            )
            return
        if failed:
            self._release_chat(ctx.generation_id)
            logger.warning(
                "Chat %s expired before its stream started", ctx.generation_id
            )

    # =========================================================================
    # Queries and control
    # =========================================================================

    async def get_unit(self, user_id: uuid.UUID, unit_id: uuid.UUID) -> Generation:
        """A user's unit.

        Raises:
            NotFoundError: Missing, or owned by another user.
        """
        async with self._session_factory() as db:
            generation = await GenerationRepository.get_for_user(
                db, generation_id=unit_id, user_id=user_id
            )
        if generation is None:
            raise NotFoundError("Generation", str(unit_id))
        return generation

    async def list_units(
        self,
        user_id: uuid.UUID,
        *,
        correlation_id: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Generation], int]:
        """A user's units, newest first, optionally for one submission."""
        async with self._session_factory() as db:
            return await GenerationRepository.list_for_user(
                db,
                user_id,
                correlation_id=correlation_id,
                offset=offset,
                limit=limit,
            )

    async def cancel(self, user_id: uuid.UUID, unit_id: uuid.UUID) -> Generation:
        """Stop a streaming unit.

        A unit streaming in this process is stopped through its stream,
        which then settles the output produced so far. A chat that was
        opened but whose stream has not started, or that has no live stream
        here, is failed and refunded directly. Resolved units
        are returned unchanged.

        Raises:
            NotFoundError: Missing, or owned by another user.
            InvalidStateError: The unit is not a streaming (chat) unit.
        """
        generation = await self.get_unit(user_id, unit_id)
        if generation.type != "chat":
            raise InvalidStateError(
                f"Only streaming generations can be cancelled; this is a {generation.type} generation"
            )
        if generation.is_terminal:
            return generation

        cancel_event = self._chat_cancels.get(unit_id)
        ctx = self._contexts.get(unit_id)
        if cancel_event is not None and ctx is not None:
            # Nobody is consuming the stream yet, so no generator will see the event.
            if await self._fail_unit(
                ctx,
                REASON_CANCELLED,
                "cancelled before the stream started",
                from_statuses=[GenerationStatus.DISPATCHED],
            ):
                self._release_chat(unit_id)
                logger.info("Chat %s cancelled by user %s before streaming", unit_id, user_id)
                return await self.get_unit(user_id, unit_id)
        if cancel_event is not None:
            cancel_event.set()
            logger.info("Chat %s cancel requested by user %s", unit_id, user_id)
            return generation

        async with self._session_factory() as db:
            ctx = await self._context_from_row(db, generation)
        if ctx is not None:
            await self._fail_unit(ctx, REASON_CANCELLED, "cancelled without a live stream")
        return await self.get_unit(user_id, unit_id)

    async def recover_interrupted(self) -> int:
        """Resume or fail units a previous process left unresolved.

        Provider jobs with a stored handle resume polling with whatever is
        left of their wait budget. Every other unresolved unit is failed
        and its reservation refunded.

        Returns:
            Number of units resumed or failed.
        """
        async with self._session_factory() as db:
            units = await GenerationRepository.list_unresolved(db)
            contexts = [
                (unit, await self._context_from_row(db, unit))
                for unit in units
                if unit.id not in self._contexts
            ]

        handled = 0
        for unit, ctx in contexts:
            if ctx is None:
                continue
            handled += 1
            adapter = self._resumable_adapter(unit, ctx)
            if adapter is not None and unit.job_handle:
                ctx.handle = JobHandle(
                    provider=adapter.provider_name,
                    handle_id=unit.job_handle,
                    endpoint=ctx.model.endpoint,
                )
                started = _as_aware(unit.started_at) or utcnow()
                elapsed = (utcnow() - started).total_seconds()
                deadline = (
                    asyncio.get_running_loop().time()
                    + self._wait_budget(ctx.model)
                    - elapsed
                )
                logger.info("Resuming job %s for unit %s", unit.job_handle, unit.id)
                self._launch(ctx, self._poll_job(ctx, adapter, ctx.handle, deadline))
            else:
                await self._fail_unit(ctx, REASON_INTERNAL_ERROR, "interrupted by restart")

        if handled:
            logger.info("Recovered %d interrupted unit(s)", handled)
        return handled

    def _resumable_adapter(
        self, unit: Generation, ctx: _UnitContext
    ) -> AsyncJobAdapter | None:
        in_flight = {status.value for status in IN_FLIGHT_STATUSES}
        if not unit.job_handle or unit.status not in in_flight:
            return None
        try:
            adapter = self._registry.resolve(ctx.model, ctx.provider or ctx.model.provider)
        except ConfigurationError as e:
            logger.error("Unit %s: %s", unit.id, e.detail)
            return None
        return adapter if isinstance(adapter, AsyncJobAdapter) else None

    async def drain(self) -> None:
        """Wait until every running unit task has finished."""
        while self._tasks or self._background:
            await asyncio.gather(
                *self._tasks.values(), *self._background, return_exceptions=True
            )

    async def shutdown(self) -> None:
        """Cancel in-flight work; cancelled units are failed and refunded."""
        for watchdog in self._chat_watchdogs.values():
            watchdog.cancel()
        for cancel_event in self._chat_cancels.values():
            cancel_event.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *self._background, return_exceptions=True)

        # Chats opened but never streamed still hold their reservation.
        for generation_id in list(self._chat_cancels):
            ctx = self._contexts.get(generation_id)
            self._release_chat(generation_id)
            if ctx is not None:
                await self._fail_unit(ctx, REASON_CANCELLED, "shut down before streaming")
        await self._registry.aclose()
        logger.info("Orchestrator stopped (%d unit task(s) cancelled)", len(tasks))
