"""Abstract adapter variants and shared types for generation providers.

Every catalog model resolves to exactly one of three adapter variants:

- SyncAdapter: one call returns the finished outputs (fal image models).
- AsyncJobAdapter: submit returns a job handle; completion arrives by
  status polling or webhook (fal queue, Replicate).
- StreamingAdapter: an incremental token stream with usage at the end
  (chat models).

The orchestrator dispatches on the variant only; provider wire formats
stay inside the adapters.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig


class AdapterVariant(str, Enum):
    """Closed set of adapter variants."""

    SYNC = "sync"
    ASYNC_JOB = "async_job"
    STREAMING = "streaming"


class JobState(str, Enum):
    """Provider-neutral job state reported by AsyncJobAdapter."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ChatMessage:
    """A single chat message.

    Attributes:
        role: "system", "user", or "assistant".
        content: Message text.
    """

    role: str
    content: str


@dataclass
class GenerationRequest:
    """What the orchestrator asks an adapter to produce.

    Attributes:
        model_id: Catalog slug (for logging).
        endpoint: Provider-side model path or identifier.
        generation_type: image, video, or chat.
        prompt: Prompt text.
        options: Selected option values, passed to the provider as-is.
        quantity: Number of outputs (image/video).
        input_images: Optional input image URLs (image-to-image, image-to-video).
        messages: Conversation for chat models.
        max_output_tokens: Output cap for chat models.
    """

    model_id: str
    endpoint: str
    generation_type: str
    prompt: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    quantity: int = 1
    input_images: list[str] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)
    max_output_tokens: int | None = None


@dataclass
class GenerationResult:
    """Normalized provider output.

    Attributes:
        urls: Output asset URLs (images or videos).
        text: Output text (chat).
        seed: Provider seed, when reported.
        metadata: Provider extras worth keeping (dimensions, timings, ...).
        input_tokens: Prompt tokens (chat).
        output_tokens: Completion tokens (chat).
    """

    urls: list[str] = field(default_factory=list)
    text: str | None = None
    seed: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    input_tokens: int | None = None
    output_tokens: int | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict stored on the generation unit."""
        payload: dict[str, Any] = {"urls": list(self.urls)}
        if self.text is not None:
            payload["text"] = self.text
        if self.seed is not None:
            payload["seed"] = self.seed
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass(frozen=True)
class JobHandle:
    """Identifies a submitted provider job.

    Only ``handle_id`` is persisted. Adapters must be able to rebuild any
    URLs they need from ``endpoint`` and ``handle_id`` after a restart;
    the URL fields are a fast path when the provider returned them.

    Attributes:
        provider: Provider identifier ("fal", "replicate").
        handle_id: Provider request/prediction id.
        endpoint: Model endpoint the job was submitted to.
        status_url: Provider status URL, when returned on submit.
        response_url: Provider result URL, when returned on submit.
        cancel_url: Provider cancel URL, when returned on submit.
    """

    provider: str
    handle_id: str
    endpoint: str
    status_url: str | None = None
    response_url: str | None = None
    cancel_url: str | None = None


@dataclass
class JobStatus:
    """Provider-neutral view of a job's progress.

    Attributes:
        state: Current JobState.
        queue_position: Position in the provider queue, when known.
        result: Outputs, set when state is SUCCEEDED.
        error: Raw provider error text (logged, never shown to users).
        error_reason: Reason category for failures (see providers.errors).
    """

    state: JobState
    queue_position: int | None = None
    result: GenerationResult | None = None
    error: str | None = None
    error_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED)


@dataclass
class StreamEvent:
    """One event from a streaming adapter.

    Token events carry ``text``. The final event has ``done=True`` and the
    usage the provider reported (None when it reported none).
    """

    text: str = ""
    done: bool = False
    input_tokens: int | None = None
    output_tokens: int | None = None


class GenerationAdapter(ABC):
    """Common base for all adapter variants."""

    variant: ClassVar[AdapterVariant]

    def __init__(self, config: "ProviderConfig") -> None:
        """Initialize adapter with configuration.

        Args:
            config: Provider configuration (keys, timeouts, retry policy).
        """
        self.config = config

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier used in logs and webhook routing."""
        ...

    async def aclose(self) -> None:  # noqa: B027
        """Release network resources. Default: nothing to release."""


class SyncAdapter(GenerationAdapter):
    """Adapter whose single call returns the finished outputs."""

    variant = AdapterVariant.SYNC

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> GenerationResult:
        """Run the generation and wait for its outputs.

        Raises:
            ProviderUnavailable: Transient failure (retryable).
            ProviderRejected: Provider refused the request.
        """
        ...


class AsyncJobAdapter(GenerationAdapter):
    """Adapter that submits a job and reports its status later."""

    variant = AdapterVariant.ASYNC_JOB

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> JobHandle:
        """Submit a job and return its handle without waiting for outputs."""
        ...

    @abstractmethod
    async def status(self, handle: JobHandle) -> JobStatus:
        """Fetch the current status (and outputs, once finished) of a job."""
        ...

    @abstractmethod
    def parse_webhook(self, payload: Any) -> tuple[str, JobStatus] | None:
        """Interpret a webhook payload.

        Returns:
            (handle id, status) for a recognizable payload, None otherwise.
            Never raises on malformed input.
        """
        ...

    @abstractmethod
    async def cancel(self, handle: JobHandle) -> None:
        """Ask the provider to stop a job. Best effort."""
        ...


class StreamingAdapter(GenerationAdapter):
    """Adapter producing an incremental token stream."""

    variant = AdapterVariant.STREAMING

    @abstractmethod
    def open(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Open the stream.

        Implementations are async generators: closing the iterator
        (``aclose()``) closes the upstream connection.

        Yields:
            Token events, then one final event with ``done=True``.
        """
        ...
