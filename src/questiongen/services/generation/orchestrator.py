"""Provider cascade orchestrator.

Providers are tried strictly in order. Each gets up to ``max_retries + 1``
attempts with exponential backoff between them (``tenacity``); the first
attempt whose output survives extraction, repair and validation wins and no
later provider is called. Unconfigured providers are skipped without an
attempt. When everything is exhausted the caller gets a ``GenerationFailure``
carrying the attempt log and the fallback document; per-attempt errors never
escape ``GenerationOrchestrator.generate``.

Cancellation is cooperative through an ``asyncio.Event``: it interrupts the
provider call, the stream read and the backoff sleep alike.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from questiongen.core.config import Settings, get_settings
from questiongen.core.logging import StructuredLogger, correlation_scope
from questiongen.core.observability import get_tracer
from questiongen.schemas.generation import ProgressEvent
from questiongen.schemas.questionnaire import GeneratedDocument
from questiongen.services.generation.document_validator import DocumentValidator
from questiongen.services.generation.exceptions import (
    CONTENT_ERRORS,
    ConfigurationMissing,
    GenerationCancelled,
    GenerationError,
    ProviderError,
    ProviderTimeout,
    ProviderUnknownError,
)
from questiongen.services.generation.fallbacks import load_fallback_document
from questiongen.services.generation.interfaces import (
    AttemptObserver,
    LLMProvider,
    PersistenceProtocol,
    ProgressSink,
    PromptTemplateProtocol,
    ProviderReply,
)
from questiongen.services.generation.json_extractor import extract_json_candidate
from questiongen.services.generation.json_repair import parse_candidate
from questiongen.services.generation.models import (
    AttemptLog,
    AttemptOutcome,
    ErrorKind,
    GenerationFailure,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
    GenerationSuccess,
    ProviderAttempt,
    RenderedPrompt,
    utc_now,
)
from questiongen.services.generation.persistence import PersistenceCoordinator
from questiongen.services.generation.prompts import get_prompt_template
from questiongen.services.generation.providers import build_provider, map_provider_error
from questiongen.services.generation.response_aggregator import ResponseAggregator


logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)
_tracer = get_tracer(__name__)

RETRYABLE_ERRORS: tuple[type[GenerationError], ...] = (ProviderError, *CONTENT_ERRORS)

# How long a closed progress stream waits for the run to wind down.
CANCEL_GRACE_SECONDS = 5.0

Sleep = Callable[[float], Awaitable[Any]]


class DeadlineExceeded(Exception):
    """The overall generation budget ran out."""


@dataclass(slots=True)
class _AttemptResult:
    document: GeneratedDocument
    truncation_repaired: bool
    warnings: tuple[str, ...]


async def _race_cancel(awaitable: Awaitable[Any], cancel_event: asyncio.Event) -> Any:
    """Await ``awaitable`` unless ``cancel_event`` fires first."""
    if cancel_event.is_set():
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise GenerationCancelled()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            await asyncio.wait({work})
    if work.cancelled():
        raise GenerationCancelled()
    return work.result()


class GenerationOrchestrator:
    """Runs one request through the provider cascade.

    Accepts collaborators explicitly to make testing and DI easier; anything
    not passed is built from settings on first use.
    """

    def __init__(
        self,
        providers: Mapping[str, LLMProvider] | Iterable[LLMProvider] | None = None,
        templates: PromptTemplateProtocol | None = None,
        validator_factory: Callable[[], DocumentValidator] | None = None,
        fallback_document: GeneratedDocument | None = None,
        observer: AttemptObserver | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        settings: Settings | None = None,
    ) -> None:
        if providers is None:
            registry: dict[str, LLMProvider] = {}
        elif isinstance(providers, Mapping):
            registry = dict(providers)
        else:
            registry = {p.name: p for p in providers}
        self._providers = registry
        self._templates = templates
        self._settings = settings
        self._validator_factory = validator_factory or (
            lambda: DocumentValidator(settings=self.settings)
        )
        self._fallback_document = fallback_document
        self._observer = observer
        self._sleep = sleep
        self._clock = clock
        self._background: set[asyncio.Future[Any]] = set()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def fallback_document(self) -> GeneratedDocument:
        if self._fallback_document is None:
            self._fallback_document = load_fallback_document()
        return self._fallback_document

    def _resolve_provider(self, name: str) -> LLMProvider:
        provider = self._providers.get(name)
        if provider is None:
            provider = build_provider(name, self.settings)
            self._providers[name] = provider
        return provider

    def _render(self, request: GenerationRequest) -> RenderedPrompt:
        if request.prompt is not None:
            return request.prompt
        templates = self._templates or get_prompt_template(self.settings)
        return templates.render(request.context)

    async def generate(
        self,
        request: GenerationRequest,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressSink | None = None,
    ) -> GenerationResult:
        cancel_event = cancel_event or asyncio.Event()
        run = _Run(self, request, cancel_event, on_progress)
        with correlation_scope(request.request_id):
            structured_logger.info(
                "Generation started",
                request_id=request.request_id,
                providers=list(request.providers),
                max_retries=request.options.max_retries,
            )
            try:
                result = await run.cascade()
            except ConfigurationMissing as e:
                result = run.failure(ErrorKind.CONFIGURATION_MISSING, e.message)
            except GenerationCancelled as e:
                result = run.failure(ErrorKind.CANCELLED, e.message)
            except DeadlineExceeded as e:
                result = run.failure(ErrorKind.DEADLINE_EXCEEDED, str(e))

            if isinstance(result, GenerationSuccess):
                structured_logger.info(
                    "Generation succeeded",
                    request_id=request.request_id,
                    provider=result.provider_used,
                    attempts=len(result.attempts),
                    truncation_repaired=result.truncation_repaired,
                    warnings=len(result.warnings),
                )
            else:
                structured_logger.warning(
                    "Generation failed",
                    request_id=request.request_id,
                    error_kind=str(result.error_kind),
                    attempts=len(result.attempts),
                    detail=result.detail,
                )
            return result

    def _notify_observer(self, request_id: str, attempt: ProviderAttempt) -> None:
        if self._observer is None:
            return
        try:
            outcome = self._observer(request_id, attempt)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._background.add(task)
                task.add_done_callback(self._observer_done)
        except Exception as e:
            logger.warning("Attempt observer failed: %s", e)

    def _observer_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Attempt observer failed: %s", task.exception())


class _Run:
    """State of one ``generate`` call: attempt log, deadline, progress sink."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        request: GenerationRequest,
        cancel_event: asyncio.Event,
        on_progress: ProgressSink | None,
    ) -> None:
        self.orchestrator = orchestrator
        self.request = request
        self.options = request.options
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.log = AttemptLog()
        self.skipped: list[str] = []
        self._clock = orchestrator._clock
        self.deadline = self._clock() + self.options.overall_deadline_ms / 1000

    def remaining(self) -> float:
        return self.deadline - self._clock()

    def failure(self, kind: ErrorKind, detail: str) -> GenerationFailure:
        return GenerationFailure(
            error_kind=kind,
            attempts=self.log.snapshot(),
            fallback_document=self.orchestrator.fallback_document,
            detail=detail,
            skipped_providers=tuple(self.skipped),
        )

    async def emit(self, payload: dict[str, Any]) -> None:
        if self.on_progress is None or self.cancel_event.is_set():
            return
        try:
            result = self.on_progress(ProgressEvent.model_validate(payload))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Progress sink failed, disabling notifications: %s", e)
            self.on_progress = None

    async def cascade(self) -> GenerationResult:
        prompt = self.orchestrator._render(self.request)
        # Unknown names fail the run before any provider is called.
        resolved = [
            (name, self.orchestrator._resolve_provider(name)) for name in self.request.providers
        ]
        last_error: GenerationError | None = None

        for name, provider in resolved:
            if not provider.is_configured():
                self.skipped.append(name)
                structured_logger.info("Provider skipped", provider=name, outcome="skipped")
                continue

            try:
                outcome = await self._run_provider(provider, prompt)
            except RETRYABLE_ERRORS as e:
                last_error = e
                structured_logger.warning(
                    "Provider exhausted, moving on",
                    provider=name,
                    attempts=len(self.log.for_provider(name)),
                    error_code=e.error_code,
                )
                continue

            return GenerationSuccess(
                document=outcome.document,
                provider_used=name,
                attempts=self.log.snapshot(),
                truncation_repaired=outcome.truncation_repaired,
                warnings=outcome.warnings,
                skipped_providers=tuple(self.skipped),
            )

        if last_error is None:
            return self.failure(
                ErrorKind.NO_PROVIDER_CONFIGURED,
                "No configured provider among: " + ", ".join(self.request.providers),
            )
        return self.failure(ErrorKind.PROVIDERS_EXHAUSTED, str(last_error))

    async def _run_provider(self, provider: LLMProvider, prompt: RenderedPrompt) -> _AttemptResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.options.attempts_per_provider),
            wait=wait_exponential(
                multiplier=self.options.base_backoff_ms / 1000,
                max=self.options.max_backoff_ms / 1000,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self._backoff_sleep(provider.name),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                result = await self._attempt(
                    provider, attempt.retry_state.attempt_number, prompt
                )
            outcome = attempt.retry_state.outcome
            if outcome is not None and not outcome.failed:
                return result
        raise ProviderUnknownError(f"{provider.name} produced no attempt")

    def _backoff_sleep(self, provider: str) -> Sleep:
        async def sleep(seconds: float) -> None:
            if seconds >= self.remaining():
                raise DeadlineExceeded(
                    f"Overall deadline of {self.options.overall_deadline_ms} ms "
                    f"would pass during backoff for {provider}"
                )
            await self.emit(
                {
                    "status": "retry",
                    "step": "backoff",
                    "provider": provider,
                    "detail": f"retrying in {seconds:.1f}s",
                }
            )
            await _race_cancel(self.orchestrator._sleep(seconds), self.cancel_event)

        return sleep

    async def _call(self, provider: LLMProvider, prompt: RenderedPrompt) -> ProviderReply:
        try:
            return await _race_cancel(
                provider.call(prompt.system, prompt.user), self.cancel_event
            )
        except (GenerationError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise map_provider_error(provider.name, e) from e

    async def _aggregate(
        self, provider: LLMProvider, aggregator: ResponseAggregator, reply: ProviderReply
    ) -> str:
        try:
            return await aggregator.aggregate(reply)
        except (GenerationError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise map_provider_error(provider.name, e) from e

    async def _attempt(
        self, provider: LLMProvider, attempt_number: int, prompt: RenderedPrompt
    ) -> _AttemptResult:
        if self.cancel_event.is_set():
            raise GenerationCancelled()
        budget = min(self.options.per_provider_timeout_ms / 1000, self.remaining())
        if budget <= 0:
            raise DeadlineExceeded(
                f"Overall deadline of {self.options.overall_deadline_ms} ms exceeded"
            )

        await self.emit(
            {
                "status": "attempt",
                "step": "provider_call",
                "provider": provider.name,
                "attempt": attempt_number,
            }
        )

        aggregator = ResponseAggregator(
            provider=provider.name,
            attempt=attempt_number,
            progress_sink=self.on_progress,
            cancel_event=self.cancel_event,
        )
        started_at = utc_now()
        started = self._clock()
        raw = ""

        with _tracer.start_as_current_span("generation.attempt") as span:
            span.set_attribute("provider", provider.name)
            span.set_attribute("attempt", attempt_number)
            try:
                try:
                    async with asyncio.timeout(budget):
                        reply = await self._call(provider, prompt)
                        raw = await self._aggregate(provider, aggregator, reply)
                except TimeoutError as e:
                    raw = aggregator.buffer.text()
                    if self.remaining() <= 0:
                        raise DeadlineExceeded(
                            f"Overall deadline of {self.options.overall_deadline_ms} ms "
                            f"exceeded during {provider.name} attempt {attempt_number}"
                        ) from e
                    raise ProviderTimeout(
                        f"{provider.name} did not finish within {budget:.1f}s"
                    ) from e

                candidate = parse_candidate(extract_json_candidate(raw))
                validator = self.orchestrator._validator_factory()
                document = validator.validate(candidate.value)
            except (GenerationError, DeadlineExceeded, asyncio.CancelledError) as e:
                raw = raw or aggregator.buffer.text()
                self._record(provider.name, attempt_number, started_at, started, raw, e, span)
                raise

            self._record(provider.name, attempt_number, started_at, started, raw, None, span)
            return _AttemptResult(
                document=document,
                truncation_repaired=candidate.truncation_repaired,
                warnings=tuple(validator.warnings),
            )

    def _record(
        self,
        provider: str,
        attempt_number: int,
        started_at: Any,
        started: float,
        raw: str,
        error: BaseException | None,
        span: Any,
    ) -> None:
        if error is None:
            outcome = AttemptOutcome.SUCCESS
        elif isinstance(error, GenerationCancelled | asyncio.CancelledError):
            outcome = AttemptOutcome.CANCELLED
        elif isinstance(error, ProviderTimeout | DeadlineExceeded):
            outcome = AttemptOutcome.TIMEOUT
        else:
            outcome = AttemptOutcome.ERROR

        if isinstance(error, GenerationError):
            error_code: str | None = error.error_code
            error_message: str | None = error.message
        elif isinstance(error, DeadlineExceeded):
            error_code, error_message = "deadline_exceeded", str(error)
        elif error is not None:
            error_code, error_message = "cancelled", "Task was cancelled"
        else:
            error_code = error_message = None

        duration_ms = round((self._clock() - started) * 1000, 3)
        attempt = ProviderAttempt(
            provider=provider,
            attempt_number=attempt_number,
            started_at=started_at,
            outcome=outcome,
            raw_text=raw,
            duration_ms=duration_ms,
            error_code=error_code,
            error_message=error_message,
        )
        self.log.record(attempt)

        span.set_attribute("outcome", str(outcome))
        span.set_attribute("duration_ms", duration_ms)
        span.set_attribute("received_chars", len(raw))
        if error_code:
            span.set_attribute("error_code", error_code)

        log = structured_logger.info if error is None else structured_logger.warning
        log(
            "Provider attempt finished",
            provider=provider,
            attempt=attempt_number,
            duration_ms=duration_ms,
            outcome=str(outcome),
            error_code=error_code,
            received_chars=len(raw),
        )
        self.orchestrator._notify_observer(self.request.request_id, attempt)


def _with_prompt_defaults(context: Mapping[str, Any], settings: Settings) -> dict[str, Any]:
    merged = dict(context)
    merged.setdefault("section_count", settings.EXPECTED_SECTION_COUNT)
    merged.setdefault("min_questions", settings.MIN_QUESTIONS_PER_SECTION)
    merged.setdefault("max_questions", settings.MAX_QUESTIONS_PER_SECTION)
    return merged


async def generate(
    context: Mapping[str, Any],
    providers: Iterable[str] | None = None,
    options: GenerationOptions | None = None,
    *,
    request_id: str | None = None,
    orchestrator: GenerationOrchestrator | None = None,
    persistence: PersistenceProtocol | None = None,
    cancel_event: asyncio.Event | None = None,
    on_progress: ProgressSink | None = None,
    settings: Settings | None = None,
) -> GenerationResult:
    """Generate a questionnaire for ``context`` and hand the outcome to storage.

    Provider order and budgets default to configuration. Persistence is
    skipped when no store is given.
    """
    settings = settings or get_settings()
    request = GenerationRequest(
        request_id=request_id or str(uuid.uuid4()),
        context=MappingProxyType(_with_prompt_defaults(context, settings)),
        providers=tuple(providers if providers is not None else settings.GENERATION_PROVIDERS),
        options=options or GenerationOptions.from_settings(settings),
    )
    orchestrator = orchestrator or GenerationOrchestrator(settings=settings)

    result = await orchestrator.generate(
        request, cancel_event=cancel_event, on_progress=on_progress
    )

    if persistence is not None:
        with correlation_scope(request.request_id):
            await PersistenceCoordinator(persistence).finalize(request.request_id, result)
    return result


async def stream_generation_progress(
    context: Mapping[str, Any],
    providers: Iterable[str] | None = None,
    options: GenerationOptions | None = None,
    **kwargs: Any,
) -> AsyncGenerator[str, None]:
    """Run ``generate`` and yield SSE lines for its progress and outcome.

    Closing the generator (client disconnect) sets the cancellation event and
    waits a bounded grace period for the run to stop.
    """
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
    cancel_event = asyncio.Event()

    def sink(event: ProgressEvent) -> None:
        queue.put_nowait(event)

    async def run() -> GenerationResult:
        try:
            return await generate(
                context,
                providers,
                options,
                cancel_event=cancel_event,
                on_progress=sink,
                **kwargs,
            )
        finally:
            queue.put_nowait(None)

    task = asyncio.ensure_future(run())
    try:
        yield ProgressEvent.model_validate({"status": "started", "step": "started"}).to_sse()
        while (event := await queue.get()) is not None:
            yield event.to_sse()

        result = await task
        if isinstance(result, GenerationSuccess):
            yield ProgressEvent.terminal_success(
                provider=result.provider_used, document=result.document.to_wire()
            ).to_sse()
        else:
            yield ProgressEvent.terminal_error(
                step="generate",
                detail=result.detail,
                error_code=str(result.error_kind),
                document=result.fallback_document.to_wire(),
            ).to_sse()
    finally:
        if not task.done():
            cancel_event.set()
            done, _ = await asyncio.wait({task}, timeout=CANCEL_GRACE_SECONDS)
            if not done:
                logger.warning("Generation did not stop within grace period; cancelling task")
                task.cancel()
                await asyncio.wait({task})
            elif not task.cancelled() and task.exception() is not None:
                logger.error("Generation failed after client disconnect: %s", task.exception())
