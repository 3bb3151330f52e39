"""Summarization engine.

Requests are queued on a bounded queue and executed by a small pool of worker
tasks, since local inference runtimes usually serialize generation. Each
request moves through a fixed set of states and never leaves a terminal one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

import structlog

from neural_mail.config import Settings
from neural_mail.exceptions import (
    Busy,
    EmptyInput,
    InferenceFailed,
    ModelTimeout,
    ModelUnavailable,
    OllamaConnectionError,
    OllamaInferenceError,
    OllamaModelNotFoundError,
    RequestCancelled,
    SummarizationError,
)
from neural_mail.models import MessageHeader, MessageKey, SummaryResult
from neural_mail.ollama import OllamaClient
from neural_mail.summarize.prompt import build_ask_messages, build_summary_prompt

logger = structlog.get_logger()


class SummaryState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {
        SummaryState.COMPLETED,
        SummaryState.TIMED_OUT,
        SummaryState.FAILED,
        SummaryState.CANCELLED,
    }
)


@dataclass(frozen=True)
class SummaryOptions:
    """Per-request overrides of the configured defaults."""

    model: str | None = None
    max_input_chars: int | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class ModelStatus:
    model: str
    reachable: bool
    installed: bool


class SummaryRequest:
    """One inference request and its lifecycle.

    A request carries either a generate prompt or chat messages. Awaiting
    :meth:`result` yields the :class:`SummaryResult` or raises the
    summarization error the request ended with.
    """

    def __init__(
        self,
        *,
        model: str,
        timeout: float,
        prompt: str | None = None,
        messages: list[dict[str, str]] | None = None,
        options: dict[str, int] | None = None,
        key: MessageKey | None = None,
        truncated: bool = False,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.prompt = prompt
        self.messages = messages
        self.options = options
        self.key = key
        self.truncated = truncated
        self.state = SummaryState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._deadline: float | None = None
        self._outcome: asyncio.Future[SummaryResult] = asyncio.get_running_loop().create_future()
        # Mark the outcome retrieved even when nobody awaits a failed request.
        self._outcome.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    async def result(self) -> SummaryResult:
        return await asyncio.shield(self._outcome)

    def cancel(self) -> bool:
        """Cancel the request, tearing down a running model stream.

        Returns:
            False if the request had already finished.
        """

        if not self._finish(SummaryState.CANCELLED, error=RequestCancelled("Request was cancelled")):
            return False
        if self._task is not None:
            self._task.cancel()
        logger.info("summary_cancelled", key=str(self.key) if self.key else None)
        return True

    def _remaining(self) -> float:
        """Seconds left before the request times out, counted from enqueueing."""
        if self._deadline is None:
            return self.timeout
        return self._deadline - asyncio.get_running_loop().time()

    def _expire(self) -> None:
        if not self._finish(SummaryState.TIMED_OUT, error=ModelTimeout("Model did not answer in time")):
            return
        logger.warning(
            "summary_timed_out",
            key=str(self.key) if self.key else None,
            model=self.model,
            timeout=self.timeout,
        )
        if self._task is not None:
            self._task.cancel()

    def _advance(self, state: SummaryState) -> bool:
        if self.done:
            return False
        self.state = state
        return True

    def _finish(
        self,
        state: SummaryState,
        *,
        result: SummaryResult | None = None,
        error: SummarizationError | None = None,
    ) -> bool:
        if not self._advance(state):
            return False
        if error is not None:
            self._outcome.set_exception(error)
        else:
            self._outcome.set_result(result)
        return True


class SummarizationEngine:
    """Turns message text into summaries with the local model."""

    def __init__(self, settings: Settings | None = None, client: OllamaClient | None = None) -> None:
        """Initialize the summarization engine.

        Args:
            settings: Service settings. If None, uses default settings.
            client: Ollama client. If None, one is created and owned by the engine.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self._owns_client = client is None
        self.client = client or OllamaClient(self.settings)
        self._queue: asyncio.Queue[SummaryRequest] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._active: set[SummaryRequest] = set()

    @property
    def pending(self) -> int:
        """Requests waiting for a worker."""
        return self._queue.qsize() if self._queue is not None else 0

    async def summarize(
        self,
        header: MessageHeader | None,
        body: str,
        options: SummaryOptions | None = None,
    ) -> SummaryResult:
        """Summarize one message body.

        The timeout covers the whole wait, time spent queued behind other
        requests included.

        Raises:
            EmptyInput: If the body has no text.
            Busy: If the request queue is full.
            ModelUnavailable: If Ollama is down or lacks the model.
            ModelTimeout: If the model did not finish in time.
            InferenceFailed: If the model answered with an error.
            RequestCancelled: If the request was cancelled.
        """

        request = self.submit(header, body, options)
        return await self._wait(request)

    def submit(
        self,
        header: MessageHeader | None,
        body: str,
        options: SummaryOptions | None = None,
    ) -> SummaryRequest:
        """Queue a summary and return its request handle without waiting."""

        if not body or not body.strip():
            raise EmptyInput("Nothing to summarize")

        options = options or SummaryOptions()
        max_chars = options.max_input_chars or self.settings.summary_max_input_chars
        prompt, truncated = build_summary_prompt(
            body,
            max_chars,
            sender=header.sender if header else None,
            subject=header.subject if header else None,
        )
        request = SummaryRequest(
            model=options.model or self.settings.ollama_model,
            timeout=options.timeout or self.settings.ollama_timeout,
            prompt=prompt,
            key=header.key if header else None,
            truncated=truncated,
        )
        self._enqueue(request)
        if truncated:
            logger.info("summary_input_truncated", key=str(request.key) if request.key else None, max_chars=max_chars)
        return request

    async def ask(self, question: str, context: str, options: SummaryOptions | None = None) -> str:
        """Answer a question about the inbox from a context of cached headers."""

        if not question or not question.strip():
            raise EmptyInput("Empty question")

        options = options or SummaryOptions()
        request = SummaryRequest(
            model=options.model or self.settings.ollama_model,
            timeout=options.timeout or self.settings.ollama_timeout,
            messages=build_ask_messages(question.strip(), context),
            options={"num_ctx": self.settings.ollama_chat_num_ctx},
        )
        self._enqueue(request)
        result = await self._wait(request)
        return result.text

    async def model_status(self) -> ModelStatus:
        """Report whether Ollama is reachable and has the configured model."""

        model = self.settings.ollama_model
        try:
            installed = await self.client.has_model(model)
        except (OllamaConnectionError, OllamaInferenceError, TimeoutError) as exc:
            logger.warning("ollama_status_failed", error_type=type(exc).__name__)
            return ModelStatus(model=model, reachable=False, installed=False)
        return ModelStatus(model=model, reachable=True, installed=installed)

    async def close(self) -> None:
        """Stop the workers and cancel every unfinished request."""

        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait().cancel()
        for request in list(self._active):
            request.cancel()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._owns_client:
            await self.client.aclose()

    def _enqueue(self, request: SummaryRequest) -> None:
        queue = self._ensure_workers()
        try:
            queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning("summary_queue_full", depth=queue.maxsize)
            raise Busy("Summary queue is full") from None
        request._advance(SummaryState.REQUESTED)
        request._deadline = asyncio.get_running_loop().time() + request.timeout

    async def _wait(self, request: SummaryRequest) -> SummaryResult:
        try:
            return await asyncio.wait_for(request.result(), timeout=max(request._remaining(), 0))
        except asyncio.CancelledError:
            request.cancel()
            raise
        except (asyncio.TimeoutError, TimeoutError):
            # Still queued or still streaming past the deadline.
            request._expire()
        return await request.result()

    def _ensure_workers(self) -> asyncio.Queue[SummaryRequest]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.settings.summary_queue_depth)
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(n)) for n in range(self.settings.summary_workers)
            ]
        return self._queue

    async def _worker(self, number: int) -> None:
        assert self._queue is not None
        while True:
            request = await self._queue.get()
            try:
                if request.done:
                    continue
                request._task = asyncio.create_task(self._execute(request))
                self._active.add(request)
                await asyncio.wait({request._task})
            finally:
                self._active.discard(request)
                self._queue.task_done()

    async def _execute(self, request: SummaryRequest) -> None:
        key = str(request.key) if request.key else None
        remaining = request._remaining()
        if remaining <= 0:
            request._expire()
            return
        request._advance(SummaryState.STREAMING)
        try:
            text = await asyncio.wait_for(self._infer(request), timeout=remaining)
        except asyncio.CancelledError:
            if not request.done:
                request._finish(SummaryState.CANCELLED, error=RequestCancelled("Request was cancelled"))
            return
        except (asyncio.TimeoutError, TimeoutError):
            request._expire()
            return
        except (OllamaConnectionError, OllamaModelNotFoundError) as exc:
            logger.warning("summary_model_unavailable", key=key, model=request.model, error_type=type(exc).__name__)
            request._finish(SummaryState.FAILED, error=ModelUnavailable("Local model is unavailable"))
            return
        except OllamaInferenceError as exc:
            logger.warning("summary_failed", key=key, model=request.model, error=str(exc))
            request._finish(SummaryState.FAILED, error=InferenceFailed("Model failed to answer"))
            return
        except Exception:
            logger.exception("summary_crashed", key=key, model=request.model)
            request._finish(SummaryState.FAILED, error=InferenceFailed("Model failed to answer"))
            return

        text = text.strip()
        if not text:
            request._finish(SummaryState.FAILED, error=InferenceFailed("Model returned no text"))
            return
        result = SummaryResult(
            key=request.key,
            text=text,
            model_name=request.model,
            truncated=request.truncated,
        )
        if request._finish(SummaryState.COMPLETED, result=result):
            logger.info("summary_completed", key=key, model=request.model, truncated=request.truncated)

    async def _infer(self, request: SummaryRequest) -> str:
        if request.messages is not None:
            data = await self.client.chat(request.messages, model=request.model, options=request.options)
            message = data.get("message")
            if not isinstance(message, dict):
                raise OllamaInferenceError("Chat response has no message")
            return str(message.get("content") or "")

        assert request.prompt is not None
        chunks: list[str] = []
        async for chunk in self.client.generate_stream(request.prompt, model=request.model, options=request.options):
            chunks.append(chunk)
        return "".join(chunks)
