"""Mock adapters for testing.

One mock per adapter variant. Each records its calls and can be scripted
with results, failures, job status sequences, and token streams, so
orchestrator tests run without hitting real providers.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from omnigen.providers.base import (
    AsyncJobAdapter,
    GenerationRequest,
    GenerationResult,
    JobHandle,
    JobState,
    JobStatus,
    StreamEvent,
    StreamingAdapter,
    SyncAdapter,
)
from omnigen.providers.config import ProviderConfig


def _default_result(request: GenerationRequest) -> GenerationResult:
    return GenerationResult(
        urls=[
            f"https://mock.local/{request.model_id}/{i}.png"
            for i in range(request.quantity)
        ],
        seed=42,
    )


class MockSyncAdapter(SyncAdapter):
    """Mock synchronous adapter.

    Attributes:
        outcomes: Scripted outcomes consumed in order. A GenerationResult is
            returned, an Exception is raised. When exhausted, a default
            result with one URL per requested output is returned.
        calls: Every request received.
        delay: Seconds to sleep before answering.
    """

    def __init__(
        self,
        outcomes: list[GenerationResult | Exception] | None = None,
        *,
        delay: float = 0.0,
        provider: str = "mock",
    ) -> None:
        super().__init__(ProviderConfig())
        self.outcomes: list[GenerationResult | Exception] = list(outcomes or [])
        self.calls: list[GenerationRequest] = []
        self.delay = delay
        self._provider = provider

    @property
    def provider_name(self) -> str:
        return self._provider

    async def submit(self, request: GenerationRequest) -> GenerationResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return _default_result(request)


class MockJobAdapter(AsyncJobAdapter):
    """Mock asynchronous job adapter.

    Attributes:
        submit_outcomes: Scripted submit failures consumed before success.
        statuses: Scripted status sequence; the last entry repeats. An
            Exception entry is raised from status().
        submitted: Handles returned by submit().
        status_calls: Number of status() calls.
        cancelled: Handles passed to cancel().
    """

    def __init__(
        self,
        statuses: list[JobStatus | Exception] | None = None,
        *,
        submit_outcomes: list[Exception] | None = None,
        provider: str = "mock",
    ) -> None:
        super().__init__(ProviderConfig())
        self.statuses: list[JobStatus | Exception] = list(
            statuses or [JobStatus(state=JobState.RUNNING)]
        )
        self.submit_outcomes: list[Exception] = list(submit_outcomes or [])
        self.submitted: list[JobHandle] = []
        self.requests: list[GenerationRequest] = []
        self.status_calls = 0
        self.cancelled: list[JobHandle] = []
        self._provider = provider

    @property
    def provider_name(self) -> str:
        return self._provider

    async def submit(self, request: GenerationRequest) -> JobHandle:
        self.requests.append(request)
        if self.submit_outcomes:
            raise self.submit_outcomes.pop(0)
        handle = JobHandle(
            provider=self._provider,
            handle_id=f"mock-job-{len(self.submitted) + 1}-{request.model_id}",
            endpoint=request.endpoint,
        )
        self.submitted.append(handle)
        return handle

    async def status(self, handle: JobHandle) -> JobStatus:
        self.status_calls += 1
        outcome = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def parse_webhook(self, payload: Any) -> tuple[str, JobStatus] | None:
        """Accepts ``{"id": ..., "status": "succeeded" | "failed" | ..., "urls": [...]}``."""
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            return None
        try:
            state = JobState(payload.get("status"))
        except ValueError:
            return None
        result = None
        if state is JobState.SUCCEEDED:
            result = GenerationResult(urls=list(payload.get("urls") or []))
        return payload["id"], JobStatus(
            state=state,
            result=result,
            error=payload.get("error"),
            error_reason="provider_rejected" if state is JobState.FAILED else None,
        )

    async def cancel(self, handle: JobHandle) -> None:
        self.cancelled.append(handle)


class MockStreamingAdapter(StreamingAdapter):
    """Mock streaming adapter.

    Attributes:
        tokens: Token texts to stream.
        input_tokens: Prompt tokens reported on the final event.
        output_tokens: Completion tokens reported (default: one per token).
        report_usage: False to finish without any usage, like a provider
            that reports none.
        fail_after: Raise ``error`` after this many tokens (None = never).
        error: Exception raised at ``fail_after``.
        token_delay: Seconds to wait before each token.
        hang: Block forever after the last token instead of finishing.
        calls: Every request received.
        closed: True once a stream was closed before finishing.
    """

    def __init__(
        self,
        tokens: list[str] | None = None,
        *,
        input_tokens: int | None = 10,
        output_tokens: int | None = None,
        fail_after: int | None = None,
        error: Exception | None = None,
        token_delay: float = 0.0,
        hang: bool = False,
        report_usage: bool = True,
        provider: str = "mock",
    ) -> None:
        super().__init__(ProviderConfig())
        self.report_usage = report_usage
        self.tokens = list(tokens if tokens is not None else ["Hello", ", ", "world"])
        self.input_tokens = input_tokens
        self.output_tokens = (
            output_tokens if output_tokens is not None else len(self.tokens)
        )
        self.fail_after = fail_after
        self.error = error
        self.token_delay = token_delay
        self.hang = hang
        self.calls: list[GenerationRequest] = []
        self.closed = False
        self._provider = provider

    @property
    def provider_name(self) -> str:
        return self._provider

    async def open(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        self.calls.append(request)
        finished = False
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.error or RuntimeError("mock stream failure")
                if self.token_delay:
                    await asyncio.sleep(self.token_delay)
                yield StreamEvent(text=token)
            if self.fail_after is not None and self.fail_after >= len(self.tokens):
                raise self.error or RuntimeError("mock stream failure")
            if self.hang:
                await asyncio.Event().wait()
            finished = True
            yield StreamEvent(
                done=True,
                input_tokens=self.input_tokens if self.report_usage else None,
                output_tokens=self.output_tokens if self.report_usage else None,
            )
        finally:
            if not finished:
                self.closed = True
