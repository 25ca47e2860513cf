from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Union

from veoflow.core.config import DEFAULT_MODEL_ORDER, Settings, get_settings
from veoflow.core.errors import (
    AllCandidatesFailedError,
    QuotaExhaustedError,
    SubmissionFailedError,
    VeoflowError,
)
from veoflow.domain.models import GenerationPhase, GenerationRequest, ProgressEvent
from veoflow.providers.video.base import OperationPoller
from veoflow.providers.video.vertex_veo import is_quota_signature, model_endpoint
from veoflow.services.artifacts import ArtifactResolver, is_storage_locator
from veoflow.services.auth.credentials import CredentialStore
from veoflow.services.auth.tokens import TokenMinter
from veoflow.services.resilience import BackoffController, ModelRateLimiter
from veoflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


ProgressSink = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class AttemptSucceeded:
    model: str
    locator: str


@dataclass(frozen=True)
class AttemptQuotaExhausted:
    model: str
    error: Exception


@dataclass(frozen=True)
class AttemptFatal:
    model: str
    error: Exception


AttemptOutcome = Union[AttemptSucceeded, AttemptQuotaExhausted, AttemptFatal]


def parse_model_order(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_candidate_order(
    preferred: str | None,
    configured: Iterable[str],
    known: Iterable[str],
) -> list[str]:
    # Preferred model first, then the fallback list; unknown ids and repeats are dropped.
    known_set = set(known)
    order: list[str] = []
    for model_id in [preferred or "", *configured]:
        if not model_id or model_id not in known_set or model_id in order:
            continue
        order.append(model_id)
    return order


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, QuotaExhaustedError):
        return True
    if isinstance(exc, SubmissionFailedError):
        return is_quota_signature(exc.status, exc.body)
    return False


class GenerationOrchestrator:
    """Drives one prompt through candidate models until a video is resolved.

    Candidates are tried strictly in order. Quota exhaustion on a candidate
    triggers the shared backoff and a switch to the next model; any other
    failure aborts the whole generation.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tokens: TokenMinter,
        rate_limiter: ModelRateLimiter,
        backoff: BackoffController,
        poller: OperationPoller,
        resolver: ArtifactResolver,
        model_order: list[str] | None = None,
        known_models: list[str] | None = None,
        location: str | None = None,
        host_template: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._credentials = credentials
        self._tokens = tokens
        self._rate_limiter = rate_limiter
        self._backoff = backoff
        self._poller = poller
        self._resolver = resolver
        self._model_order = (
            model_order
            if model_order is not None
            else parse_model_order(settings.veo_model_order) or list(DEFAULT_MODEL_ORDER)
        )
        self._known_models = known_models if known_models is not None else list(settings.veo_known_models)
        self._location = location or settings.veo_location
        self._host_template = host_template or settings.veo_api_host_template

    @staticmethod
    def _emit(on_progress: ProgressSink | None, phase: GenerationPhase, message: str, **kwargs) -> None:
        if on_progress is None:
            return
        try:
            on_progress(ProgressEvent(phase=phase, message=message, **kwargs))
        except Exception as exc:  # noqa: BLE001 - progress is observational only
            logger.warning("progress_sink_error phase=%s", phase.value, exc_info=exc)

    def candidates(self, preferred: str | None) -> list[str]:
        return build_candidate_order(preferred, self._model_order, self._known_models)

    async def generate(self, request: GenerationRequest, on_progress: ProgressSink | None = None) -> str:
        self._emit(on_progress, GenerationPhase.AUTHENTICATING, "Authenticating with Vertex AI...")
        try:
            await self._tokens.get_access_token()
            project_id = self._credentials.get_tenant_id()
        except VeoflowError as exc:
            self._emit(on_progress, GenerationPhase.FAILED, str(exc))
            raise

        candidates = self.candidates(request.model)
        logger.info("generation_start preferred=%s candidates=%s", request.model, ",".join(candidates))
        last_error: Exception | None = None
        for index, model_id in enumerate(candidates, start=1):
            self._emit(
                on_progress,
                GenerationPhase.SELECTING_CANDIDATE,
                f"Selecting {model_id}...",
                model=model_id,
                candidate_index=index,
                candidate_total=len(candidates),
            )
            outcome = await self._attempt(
                request,
                project_id=project_id,
                model_id=model_id,
                index=index,
                total=len(candidates),
                on_progress=on_progress,
            )
            if isinstance(outcome, AttemptSucceeded):
                logger.info("generation_done model=%s attempt=%s", model_id, index)
                self._emit(on_progress, GenerationPhase.DONE, "Video ready.", model=model_id)
                return outcome.locator
            if isinstance(outcome, AttemptFatal):
                logger.warning(
                    "generation_failed model=%s error=%s", model_id, type(outcome.error).__name__
                )
                self._emit(on_progress, GenerationPhase.FAILED, str(outcome.error), model=model_id)
                raise outcome.error

            last_error = outcome.error
            increment_counter("veo_model_fallback_total")
            logger.warning("generation_quota_exhausted model=%s attempt=%s", model_id, index)
            self._emit(
                on_progress,
                GenerationPhase.BACKOFF,
                f"Quota reached for {model_id}. Backing off...",
                model=model_id,
            )
            await self._backoff.delay()
            self._emit(
                on_progress,
                GenerationPhase.SELECTING_CANDIDATE,
                "Switching to next model...",
                model=model_id,
            )

        error = last_error or AllCandidatesFailedError("All Veo models failed.")
        self._emit(on_progress, GenerationPhase.FAILED, str(error))
        raise error

    async def _attempt(
        self,
        request: GenerationRequest,
        *,
        project_id: str,
        model_id: str,
        index: int,
        total: int,
        on_progress: ProgressSink | None,
    ) -> AttemptOutcome:
        try:
            # Cached unless the token nears expiry during a long fallback chain.
            token = await self._tokens.get_access_token()
            await self._rate_limiter.admit(model_id)
            endpoint = model_endpoint(
                project_id=project_id,
                model_id=model_id,
                location=self._location,
                host_template=self._host_template,
            )

            self._emit(
                on_progress,
                GenerationPhase.SUBMITTING,
                f"Starting request with {model_id} ({index}/{total})...",
                model=model_id,
                candidate_index=index,
                candidate_total=total,
            )
            operation_name = await self._poller.submit(endpoint, token, request)

            self._emit(on_progress, GenerationPhase.POLLING, "Waiting for generation...", model=model_id)
            operation = await self._poller.poll(endpoint, token, operation_name)

            locator = self._resolver.check_operation(operation)
            if is_storage_locator(locator):
                self._emit(
                    on_progress,
                    GenerationPhase.RESOLVING,
                    "Retrieving video from Cloud Storage...",
                    model=model_id,
                )
            resolved = await self._resolver.resolve(locator, token)
        except VeoflowError as exc:
            if is_quota_error(exc):
                return AttemptQuotaExhausted(model=model_id, error=exc)
            return AttemptFatal(model=model_id, error=exc)
        return AttemptSucceeded(model=model_id, locator=resolved)
