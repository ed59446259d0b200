"""
SpinPipelineService — the product spin pipeline orchestrator.

Chains the stages with step status tracking, full asyncio support:
  Step 1: Upload   (Supabase Storage, only for raw image bytes)
  Step 2: Enhance  (Gemini image model, front and back concurrently)
  Step 3: Spin     (fal.ai 360° video, queue + poll)
  Step 4: Save     (Supabase upsert keyed by job id)

One job runs at a time. Any stage failure marks that step as error, moves the
pipeline to ERROR and skips the remaining stages. Results that arrive after a
reset (or after a newer job started) are dropped.
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .. import metrics
from .config import ApiKeys, PipelineConfig, env_defaults, get_supabase, resolve_config
from .enhance import GeminiEnhancer
from .errors import (
    AuthError,
    EnhancementError,
    GenerationTimeoutError,
    MalformedResponseError,
    PersistenceError,
    PipelineBusyError,
    UploadError,
    ValidationError,
)
from .models import (
    DEFAULT_STEPS,
    STEP_LABELS,
    PipelineSnapshot,
    PipelineState,
    ProductImage,
    ProductSpinJob,
    SpinProgress,
    SpinRequest,
    StepStatus,
)
from .product_store import ProductStore
from .spin import SpinGenerationClient, build_spin_prompt, spin_client_for
from .steps import StepTracker
from .storage import SupabaseStorage
from .transport import download_image_bytes

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The spin stage is bounded by its own poll budget unless a timeout is given.
DEFAULT_STAGE_TIMEOUTS = {
    "upload": 60.0,
    "enhance": 180.0,
    "save": 30.0,
}

_STAGE_ERRORS = {
    "upload": UploadError,
    "enhance": EnhancementError,
    "spin": GenerationTimeoutError,
    "save": PersistenceError,
}


class PipelineClients:
    """The external collaborators one job talks to."""

    def __init__(
        self,
        storage: SupabaseStorage,
        enhancer: GeminiEnhancer,
        spin: SpinGenerationClient,
        store: ProductStore,
    ):
        self.storage = storage
        self.enhancer = enhancer
        self.spin = spin
        self.store = store

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "PipelineClients":
        sb = get_supabase(config.supabase_url, config.supabase_key)
        return cls(
            storage=SupabaseStorage(sb, config.storage_bucket),
            enhancer=GeminiEnhancer(config.google_api_key, config.enhance_model),
            spin=spin_client_for(config),
            store=ProductStore(sb, config.products_table),
        )


class _JobSuperseded(Exception):
    pass


class SpinPipelineService:
    """
    Single-flight pipeline orchestrator.

    Usage:
        service = SpinPipelineService(env_defaults())

        snapshot = await service.start(front, back, "Chair", owner_id)
        # or, from a request handler:
        snapshot = service.launch(front, back, "Chair", owner_id)

        service.reset()
    """

    def __init__(
        self,
        defaults: Optional[PipelineConfig] = None,
        clients_factory: Callable[[PipelineConfig], PipelineClients] = PipelineClients.from_config,
        stage_timeouts: Optional[dict[str, Optional[float]]] = None,
    ):
        unknown = set(stage_timeouts or {}) - set(_STAGE_ERRORS)
        if unknown:
            raise ValueError(f"Unknown pipeline stage(s): {', '.join(sorted(unknown))}")

        self._defaults = defaults or PipelineConfig()
        self._clients_factory = clients_factory
        self._stage_timeouts = {**DEFAULT_STAGE_TIMEOUTS, **(stage_timeouts or {})}

        self.steps = StepTracker(DEFAULT_STEPS)
        self.state = PipelineState.IDLE
        self.error: Optional[str] = None
        self.progress: Optional[str] = None
        self._job: Optional[ProductSpinJob] = None
        self._active_job_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def job(self) -> Optional[ProductSpinJob]:
        return self._job.model_copy(deep=True) if self._job else None

    def snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            state=self.state,
            steps=self.steps.snapshot(),
            job=self.job,
            error=self.error,
            progress=self.progress,
        )

    # ── Commands ─────────────────────────────────────────────────────────

    async def start(
        self,
        front_image: Optional[ProductImage],
        back_image: Optional[ProductImage] = None,
        name: str = "",
        owner_id: str = "",
        overrides: Optional[ApiKeys] = None,
    ) -> PipelineSnapshot:
        """
        Run a full job and return the final snapshot.

        Bad input raises (AuthError, ValidationError, PipelineBusyError) without
        touching state. Stage failures never raise: they end the job in ERROR.
        """
        job, clients = self._begin(front_image, back_image, name, owner_id, overrides)
        return await self._run(job, clients)

    def launch(
        self,
        front_image: Optional[ProductImage],
        back_image: Optional[ProductImage] = None,
        name: str = "",
        owner_id: str = "",
        overrides: Optional[ApiKeys] = None,
    ) -> PipelineSnapshot:
        """Validate and start a job, then run its stages in a background task."""
        job, clients = self._begin(front_image, back_image, name, owner_id, overrides)
        self._task = asyncio.create_task(self._run(job, clients))
        return self.snapshot()

    def reset(self):
        """Return to IDLE. Always succeeds."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._active_job_id:
            logger.info(f"[{self._active_job_id}] Reset while {self.state.value}")
        self._task = None
        self._active_job_id = None
        self._job = None
        self.state = PipelineState.IDLE
        self.error = None
        self.progress = None
        self.steps.reset(DEFAULT_STEPS)

    # ── Job lifecycle ────────────────────────────────────────────────────

    def _begin(
        self,
        front_image: Optional[ProductImage],
        back_image: Optional[ProductImage],
        name: str,
        owner_id: str,
        overrides: Optional[ApiKeys],
    ) -> tuple[ProductSpinJob, PipelineClients]:
        if self.state != PipelineState.IDLE:
            raise PipelineBusyError(
                f"A job is already {self.state.value}; reset before starting a new one."
            )
        if not owner_id:
            raise AuthError("You must be logged in to generate product spins.")

        name = (name or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        if front_image is None or front_image.is_empty:
            raise ValidationError("A front image is required.")
        if back_image is not None and back_image.is_empty:
            raise ValidationError("Back image is empty.")

        config = resolve_config(self._defaults, overrides)
        missing = config.missing_credentials()
        if missing:
            raise ValidationError(f"Missing configuration: {', '.join(missing)}")
        clients = self._clients_factory(config)

        job = ProductSpinJob(
            name=name,
            owner_id=owner_id,
            front_image=front_image,
            back_image=back_image,
            original_image_url=front_image.url,
            original_back_image_url=back_image.url if back_image else None,
        )

        needs_upload = front_image.needs_upload or (
            back_image is not None and back_image.needs_upload
        )
        if needs_upload:
            self.steps.reset(DEFAULT_STEPS)
        else:
            self.steps.reset([s for s in DEFAULT_STEPS if s != "upload"])

        self._job = job
        self._active_job_id = job.id
        self.error = None
        self.progress = None

        if needs_upload:
            self.state = PipelineState.UPLOADING
            self.steps.start("upload")
        else:
            self.state = PipelineState.ENHANCING
            self.steps.start("enhance")

        metrics.job_started()
        logger.info(
            f"[{job.id}] Job started for user {owner_id}: '{name}' "
            f"(back image: {back_image is not None}, spin mode: {config.spin_mode})"
        )
        return job, clients

    async def _run(self, job: ProductSpinJob, clients: PipelineClients) -> PipelineSnapshot:
        job_id = job.id
        started = time.monotonic()
        try:
            if "upload" in self.steps.ids:
                await self._stage(
                    job_id, "upload", PipelineState.UPLOADING,
                    lambda: self._upload(job, clients),
                    apply=lambda urls: self._apply_uploads(job, urls),
                )

            await self._stage(
                job_id, "enhance", PipelineState.ENHANCING,
                lambda: self._enhance(job, clients),
                apply=lambda urls: self._apply_enhanced(job, urls),
            )

            await self._stage(
                job_id, "spin", PipelineState.GENERATING_SPIN,
                lambda: self._generate_spin(job, clients),
                apply=lambda url: setattr(job, "video_url", url),
            )

            await self._stage(
                job_id, "save", PipelineState.SAVING,
                lambda: clients.store.save(job),
            )

            self.state = PipelineState.COMPLETE
            self.progress = None
            metrics.job_finished(True, (time.monotonic() - started) * 1000)
            logger.info(f"[{job_id}] Job complete: {job.video_url}")

        except _JobSuperseded:
            logger.info(f"[{job_id}] Job no longer active, discarding late result")

        except Exception as e:
            if self._active_job_id != job_id:
                logger.info(f"[{job_id}] Job no longer active, discarding late failure: {e}")
            else:
                self._fail(job_id, e)
                metrics.job_finished(False, (time.monotonic() - started) * 1000)

        return self.snapshot()

    async def _stage(
        self,
        job_id: str,
        step_id: str,
        state: PipelineState,
        work: Callable[[], Awaitable[T]],
        apply: Optional[Callable[[T], None]] = None,
    ) -> T:
        self._ensure_current(job_id)
        self.state = state
        if self.steps.get(step_id).status == StepStatus.PENDING:
            self.steps.start(step_id)
        logger.info(f"[{job_id}] {state.value} → {STEP_LABELS[step_id]}")

        started = time.monotonic()
        timeout = self._stage_timeouts.get(step_id)
        try:
            if timeout:
                result = await asyncio.wait_for(work(), timeout)
            else:
                result = await work()
        except asyncio.TimeoutError as e:
            raise _STAGE_ERRORS[step_id](
                f"{STEP_LABELS[step_id]} timed out after {timeout:g}s"
            ) from e

        self._ensure_current(job_id)
        if apply is not None:
            apply(result)
        self.steps.succeed(step_id)

        metrics.stage_succeeded(step_id, (time.monotonic() - started) * 1000)
        return result

    def _ensure_current(self, job_id: str):
        if self._active_job_id != job_id:
            raise _JobSuperseded(job_id)

    def _fail(self, job_id: str, exc: Exception):
        message = str(exc) or "An unexpected error occurred"
        step_id = self.steps.fail_loading()
        self.state = PipelineState.ERROR
        self.error = message

        metrics.stage_failed(step_id or "pipeline", type(exc).__name__, message, job_id)
        logger.error(f"[{job_id}] Pipeline failed at {step_id}: {message}", exc_info=True)

    # ── Stages ───────────────────────────────────────────────────────────

    async def _upload(
        self,
        job: ProductSpinJob,
        clients: PipelineClients,
    ) -> tuple[Optional[str], Optional[str]]:
        front_url = job.original_image_url
        if job.front_image.needs_upload:
            front_url = await clients.storage.upload(
                job.front_image.data, job.owner_id, "original",
                job.front_image.filename, job.front_image.content_type,
            )

        back_url = job.original_back_image_url
        if job.back_image is not None and job.back_image.needs_upload:
            back_url = await clients.storage.upload(
                job.back_image.data, job.owner_id, "original-back",
                job.back_image.filename, job.back_image.content_type,
            )
        return front_url, back_url

    @staticmethod
    def _apply_uploads(job: ProductSpinJob, urls: tuple[Optional[str], Optional[str]]):
        job.original_image_url, job.original_back_image_url = urls

    async def _enhance(
        self,
        job: ProductSpinJob,
        clients: PipelineClients,
    ) -> tuple[str, Optional[str]]:
        tasks = [asyncio.ensure_future(
            self._enhance_one(job, job.front_image, "enhanced", clients)
        )]
        if job.back_image is not None:
            tasks.append(asyncio.ensure_future(
                self._enhance_one(job, job.back_image, "enhanced-back", clients)
            ))

        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        return results[0], results[1] if len(results) > 1 else None

    async def _enhance_one(
        self,
        job: ProductSpinJob,
        image: ProductImage,
        folder: str,
        clients: PipelineClients,
    ) -> str:
        data = image.data
        if not data:
            try:
                data = await download_image_bytes(image.url)
            except httpx.HTTPError as e:
                raise EnhancementError(f"Failed to download {image.url}: {e}") from e

        enhanced = await clients.enhancer.enhance(data, image.content_type, job.name)
        return await clients.storage.upload(
            enhanced.data, job.owner_id, folder,
            f"{folder}.{enhanced.extension}", enhanced.mime_type,
        )

    @staticmethod
    def _apply_enhanced(job: ProductSpinJob, urls: tuple[str, Optional[str]]):
        job.enhanced_image_url, job.enhanced_back_image_url = urls

    async def _generate_spin(self, job: ProductSpinJob, clients: PipelineClients) -> str:
        request = SpinRequest(
            image_url=job.enhanced_image_url,
            back_image_url=job.enhanced_back_image_url,
            prompt=build_spin_prompt(job.name),
        )

        def _on_progress(update: SpinProgress):
            if self._active_job_id == job.id:
                self.progress = update.describe()

        video_url = await clients.spin.generate(request, on_progress=_on_progress)
        if not video_url:
            raise MalformedResponseError("Spin generation returned no video URL")
        return video_url


class ServiceRegistry:
    """
    One pipeline service per owner, so each actor runs at most one job.

    A service exists only while its owner has a job (running or finished);
    reading status or resetting an unknown owner never creates one.
    """

    def __init__(
        self,
        defaults_factory: Callable[[], PipelineConfig] = env_defaults,
        clients_factory: Callable[[PipelineConfig], PipelineClients] = PipelineClients.from_config,
    ):
        self._defaults_factory = defaults_factory
        self._clients_factory = clients_factory
        self._services: dict[str, SpinPipelineService] = {}

    def __len__(self) -> int:
        return len(self._services)

    def get(self, owner_id: str) -> SpinPipelineService:
        service = self._services.get(owner_id)
        if service is None:
            service = SpinPipelineService(self._defaults_factory(), self._clients_factory)
            self._services[owner_id] = service
        return service

    def peek(self, owner_id: str) -> Optional[SpinPipelineService]:
        return self._services.get(owner_id)

    def snapshot(self, owner_id: str) -> PipelineSnapshot:
        service = self.peek(owner_id)
        if service is None:
            return idle_snapshot()
        return service.snapshot()

    def reset(self, owner_id: str) -> PipelineSnapshot:
        """Reset the owner's pipeline and forget it; the next start builds a fresh one."""
        service = self._services.pop(owner_id, None)
        if service is not None:
            service.reset()
        return idle_snapshot()


def idle_snapshot() -> PipelineSnapshot:
    return PipelineSnapshot(steps=StepTracker(DEFAULT_STEPS).snapshot())
