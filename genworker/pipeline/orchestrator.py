"""
GenerationPipeline — the job state machine.

Drives a persisted Job through its step sequence:
  Image:    BASE_GEN → CLOTH_SWAP → UPSCALE → VIDEO_PREP → VIDEO_GEN
  Training: TRAIN → REFERENCE_GEN
  Animation: BASE_GEN (morph) → VIDEO_PREP → VIDEO_GEN (motion transfer)

Steps the config did not ask for are skipped (progress advances, nothing is
charged, nothing is produced). Each step runs under the job's lock and is
persisted before the next one starts, so a restarted worker continues from
the last completed step. Async steps (VIDEO_GEN, TRAIN) persist a handle and
suspend the job in ``awaiting_callback``; the callback receiver (or the
deadline sweep) hands the result back through ``apply_result`` and the
pipeline carries on from there.
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from .errors import CapabilityError, PipelineError
from .gateway import (
    Capability,
    CapabilityGateway,
    extract_image_url,
    extract_mask_url,
    extract_model_url,
    extract_video_url,
)
from .ledger import Ledger
from .locks import JobLocks
from .models import (
    COMPLETE_PROGRESS,
    REVIEW_PROGRESS,
    STEP_PROGRESS,
    AnimationJobConfig,
    Artifact,
    CallbackPayload,
    CapabilityHandle,
    ImageJobConfig,
    Job,
    JobStatus,
    LedgerReason,
    PipelineStep,
    TrainingJobConfig,
)
from .notifications import Notifier
from .pricing import step_prices
from .storage import archive_artifact, identity_model_key
from .store import JobStore

logger = logging.getLogger(__name__)

ArchiveFn = Callable[..., Awaitable[Artifact]]

FAL_IMAGE_SIZES = {
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
    "4:3": "landscape_4_3",
    "3:4": "portrait_4_3",
    "2:3": "portrait_2_3",
    "3:2": "landscape_3_2",
    "1:1": "square_hd",
}

REFERENCE_PROMPTS = [
    ("face", "photo of {trigger}, close up face portrait, highly detailed, 8k, realistic skin texture"),
    ("face", "photo of {trigger}, side profile face portrait, studio lighting, highly detailed"),
    ("body", "photo of {trigger}, full body shot, standing pose, neutral background, fashion photography"),
    ("body", "photo of {trigger}, full body shot, walking pose, dynamic angle, street fashion"),
]

DEFAULT_CLOTHES_PROMPT = "wearing the reference outfit, matching fabric, fit and colour"

# img2img strength when morphing an animation asset onto the identity
MORPH_STRENGTH = 0.65
ANIMATION_FRAMES = 81
ANIMATION_FPS = 16


class GenerationPipeline:
    """
    Production pipeline orchestrator.

    Usage:
        pipeline = GenerationPipeline(store, ledger, gateway, notifier, locks)
        pipeline.start(job.id)            # background task
        await pipeline.drive(job.id)      # or inline (tests, callbacks)
    """

    def __init__(
        self,
        store: JobStore,
        ledger: Ledger,
        gateway: CapabilityGateway,
        notifier: Notifier,
        locks: JobLocks,
        archive: ArchiveFn = archive_artifact,
    ):
        self._store = store
        self._ledger = ledger
        self._gateway = gateway
        self._notifier = notifier
        self._locks = locks
        self._archive = archive
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[PipelineStep, Callable[[Job], Awaitable[Optional[CapabilityHandle]]]] = {
            PipelineStep.BASE_GEN: self._base_gen,
            PipelineStep.CLOTH_SWAP: self._cloth_swap,
            PipelineStep.UPSCALE: self._upscale,
            PipelineStep.VIDEO_PREP: self._video_prep,
            PipelineStep.VIDEO_GEN: self._video_gen,
            PipelineStep.TRAIN: self._train,
            PipelineStep.REFERENCE_GEN: self._reference_gen,
        }

    @property
    def locks(self) -> JobLocks:
        return self._locks

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    # ── Entry points ─────────────────────────────────────────────────────

    def start(self, job_id: str) -> asyncio.Task:
        """Drive the job on its own task."""
        task = asyncio.create_task(self.drive(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background job task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drive(self, job_id: str) -> None:
        """Run steps until the job completes, fails or suspends on a callback."""
        try:
            while await self._advance(job_id):
                pass
        except Exception as e:
            logger.exception(f"[{job_id}] Pipeline driver crashed: {e}")
            metrics.record_error("pipeline", type(e).__name__, str(e))

        job = self._store.get_job(job_id)
        if job is not None and job.is_terminal:
            self._locks.forget(job_id)

    async def _advance(self, job_id: str) -> bool:
        """Run one step under the job lock. Returns True while there is more to do."""
        async with self._locks.hold(job_id):
            job = self._store.get_job(job_id)
            if job is None:
                logger.error(f"[{job_id}] Job not found, nothing to drive")
                return False

            if job.status == JobStatus.QUEUED:
                if job.cancel_requested:
                    await self.fail(job, "cancelled")
                    return False
                job.status = JobStatus.PROCESSING
                self._store.save_job(job, expected_status=JobStatus.QUEUED)
                metrics.set_gauge("jobs.active", len(self._tasks))
                logger.info(f"[{job.id}] {job.job_type.value} job started ({job.price} credits)")

            if job.status != JobStatus.PROCESSING:
                return False

            # Cancellation is honoured between steps
            if job.cancel_requested:
                await self.fail(job, "cancelled")
                return False

            step = job.next_step
            if step is None:
                await self._finalize(job)
                return False

            return await self._execute(job, step)

    # ── Step execution ───────────────────────────────────────────────────

    async def _execute(self, job: Job, step: PipelineStep) -> bool:
        job.current_step = step

        if not self._is_requested(job, step):
            self._complete_step(job, step)
            self._store.save_job(job, expected_status=JobStatus.PROCESSING)
            logger.info(f"[{job.id}] {step.value} skipped ({job.progress}%)")
            return True

        start = time.time()
        try:
            handle = await self._handlers[step](job)
        except Exception as e:
            if not isinstance(e, PipelineError):
                logger.exception(f"[{job.id}] {step.value} raised unexpectedly")
            metrics.inc_counter(f"errors.step.{step.value}")
            await self.fail(job, f"{step.value} failed: {e}", failed_step=step)
            return False
        finally:
            metrics.record_latency(f"step.{step.value}", (time.time() - start) * 1000)

        if handle is not None:
            job.pending_handle = handle
            job.callback_deadline = handle.deadline
            job.status = JobStatus.AWAITING_CALLBACK
            self._store.save_job(job, expected_status=JobStatus.PROCESSING)
            logger.info(
                f"[{job.id}] {step.value} awaiting callback "
                f"(request {handle.external_request_id}, deadline {handle.deadline.isoformat()})"
            )
            return False

        self._complete_step(job, step)
        self._store.save_job(job, expected_status=JobStatus.PROCESSING)
        logger.info(f"[{job.id}] {step.value} complete ({job.progress}%)")

        # A cancel that arrived while the step was in flight applies now
        if job.cancel_requested:
            await self.fail(job, "cancelled")
            return False
        return True

    @staticmethod
    def _is_requested(job: Job, step: PipelineStep) -> bool:
        config = job.config
        if isinstance(config, (TrainingJobConfig, AnimationJobConfig)):
            return True
        if step == PipelineStep.CLOTH_SWAP:
            return config.wants_cloth_swap
        if step == PipelineStep.UPSCALE:
            return config.wants_upscale
        if step in (PipelineStep.VIDEO_PREP, PipelineStep.VIDEO_GEN):
            return config.generate_video
        return True

    @staticmethod
    def _complete_step(job: Job, step: PipelineStep) -> None:
        if step not in job.completed_steps:
            job.completed_steps.append(step)
        job.progress = max(job.progress, STEP_PROGRESS[step])

    def _charge(self, job: Job, step: PipelineStep) -> None:
        amount = step_prices(job.config).get(step, 0)
        if self._ledger.charge_step(job, step, amount):
            # Persist the charge before the capability call
            self._store.save_job(job, expected_status=JobStatus.PROCESSING)

    # ── Steps ────────────────────────────────────────────────────────────

    async def _base_gen(self, job: Job) -> None:
        config = job.config
        identity = self._store.get_identity(config.identity_id)
        if identity is None or identity.account_id != job.account_id:
            raise PipelineError(f"Identity {config.identity_id} not found", code="identity_not_found")
        if identity.status != "ready" or not identity.model_url:
            raise PipelineError(f"Identity {config.identity_id} is not ready", code="identity_not_ready")

        self._charge(job, PipelineStep.BASE_GEN)

        prompt = config.prompt
        if isinstance(config, ImageJobConfig) and config.use_prompt_rewrite:
            prompt = await self._rewrite_prompt(job, identity.name or identity.trigger_word)
        if identity.trigger_word and identity.trigger_word not in prompt:
            prompt = f"{identity.trigger_word}, {prompt}"
        job.effective_prompt = prompt

        request = {
            "prompt": prompt,
            "loras": [{"path": identity.model_url, "scale": 1.0}],
            "image_size": FAL_IMAGE_SIZES.get(config.aspect_ratio, "square_hd"),
            "enable_safety_checker": not config.is_explicit,
        }
        if isinstance(config, AnimationJobConfig):
            request.update(image_url=config.asset_url, strength=MORPH_STRENGTH)

        result = await self._gateway.invoke_sync(Capability.GENERATE_IMAGE, request)
        url = extract_image_url(result)
        if not url:
            raise CapabilityError("Image generation returned no image")
        job.outputs.append(Artifact(step=PipelineStep.BASE_GEN, url=url, kind="image"))

    async def _rewrite_prompt(self, job: Job, identity_name: str) -> str:
        """Best-effort prompt expansion; falls back to the user's prompt."""
        config: ImageJobConfig = job.config
        try:
            result = await self._gateway.invoke_sync(Capability.REWRITE_PROMPT, {
                "prompt": config.prompt,
                "identity_name": identity_name,
                "aspect_ratio": config.aspect_ratio,
                "is_explicit": config.is_explicit,
            })
        except CapabilityError as e:
            logger.warning(f"[{job.id}] Prompt rewrite failed, using original prompt: {e}")
            return config.prompt
        return (result.get("prompt") or "").strip() or config.prompt

    async def _cloth_swap(self, job: Job) -> None:
        config: ImageJobConfig = job.config
        base = job.latest_artifact("image")
        try:
            segmented = await self._gateway.invoke_sync(Capability.SEGMENT_CLOTHING, {
                "image_url": base.url,
                "prompts": [{"type": "text", "text": "clothing"}],
            })
            mask_url = extract_mask_url(segmented)
            if not mask_url:
                raise CapabilityError("Segmentation returned no mask")

            painted = await self._gateway.invoke_sync(Capability.INPAINT, {
                "image_url": base.url,
                "mask_url": mask_url,
                "reference_image_url": config.clothes_url,
                "prompt": f"{job.effective_prompt or config.prompt}, {config.clothes_prompt or DEFAULT_CLOTHES_PROMPT}",
            })
            url = extract_image_url(painted)
            if not url:
                raise CapabilityError("Inpainting returned no image")
        except CapabilityError as e:
            # Best-effort: keep the pre-swap image, charge nothing
            logger.warning(f"[{job.id}] Cloth swap failed, continuing with base image: {e}")
            metrics.inc_counter("pipeline.cloth_swap_skipped")
            return None

        self._charge(job, PipelineStep.CLOTH_SWAP)
        job.outputs.append(Artifact(step=PipelineStep.CLOTH_SWAP, url=url, kind="image"))
        return None

    async def _upscale(self, job: Job) -> None:
        config: ImageJobConfig = job.config
        self._charge(job, PipelineStep.UPSCALE)
        result = await self._gateway.invoke_sync(Capability.UPSCALE, {
            "image_url": job.latest_artifact("image").url,
            "upscale_mode": "factor",
            "upscale_factor": config.upscale_factor,
        })
        url = extract_image_url(result)
        if not url:
            raise CapabilityError("Upscale returned no image")
        job.outputs.append(Artifact(step=PipelineStep.UPSCALE, url=url, kind="image"))

    async def _video_prep(self, job: Job) -> None:
        """Copy the image the video starts from into durable storage."""
        index = max(i for i, a in enumerate(job.outputs) if a.kind == "image")
        job.outputs[index] = await self._archive(job.account_id, job.id, job.outputs[index], index=index)

    async def _video_gen(self, job: Job) -> CapabilityHandle:
        config = job.config
        self._charge(job, PipelineStep.VIDEO_GEN)
        if isinstance(config, AnimationJobConfig):
            return await self._gateway.invoke_async(
                Capability.ANIMATE_VIDEO,
                {
                    "image_url": job.latest_artifact("image").url,
                    "video_url": config.motion_video_url,
                    "prompt": job.effective_prompt or config.prompt,
                    "num_frames": ANIMATION_FRAMES,
                    "frames_per_second": ANIMATION_FPS,
                    "resolution": config.resolution,
                },
                job.id,
                PipelineStep.VIDEO_GEN,
            )

        return await self._gateway.invoke_async(
            Capability.RENDER_VIDEO,
            {
                "prompt": job.effective_prompt or config.prompt,
                "image_url": job.latest_artifact("image").url,
                "resolution": config.video_resolution,
                "duration_seconds": config.video_duration,
                "quality": config.video_tier,
                "aspect_ratio": config.aspect_ratio,
            },
            job.id,
            PipelineStep.VIDEO_GEN,
        )

    async def _train(self, job: Job) -> CapabilityHandle:
        config: TrainingJobConfig = job.config
        self._charge(job, PipelineStep.TRAIN)
        return await self._gateway.invoke_async(
            Capability.TRAIN_IDENTITY,
            {
                "images": config.image_urls,
                "steps": config.steps,
                "learning_rate": 0.0001,
                "training_type": "content",
                "trigger_phrase": config.trigger_word,
            },
            job.id,
            PipelineStep.TRAIN,
        )

    async def _reference_gen(self, job: Job) -> None:
        """Four preview images of the new identity, generated concurrently."""
        config: TrainingJobConfig = job.config
        model = job.latest_artifact("model")
        if model is None:
            raise PipelineError("No trained model to preview", code="model_missing")

        async def _one(kind: str, template: str) -> str:
            result = await self._gateway.invoke_sync(Capability.GENERATE_IMAGE, {
                "prompt": template.format(trigger=config.trigger_word),
                "image_size": "square_hd" if kind == "face" else "portrait_16_9",
                "loras": [{"path": model.url, "scale": 1.0}],
                "num_inference_steps": 30,
            })
            url = extract_image_url(result)
            if not url:
                raise CapabilityError("Reference generation returned no image")
            return url

        results = await asyncio.gather(
            *(_one(kind, template) for kind, template in REFERENCE_PROMPTS),
            return_exceptions=True,
        )
        generated = 0
        for (kind, _), result in zip(REFERENCE_PROMPTS, results):
            if isinstance(result, BaseException):
                logger.warning(f"[{job.id}] Reference {kind} preview failed: {result}")
                continue
            job.outputs.append(Artifact(step=PipelineStep.REFERENCE_GEN, url=result, kind="image"))
            generated += 1
        logger.info(f"[{job.id}] Generated {generated}/{len(REFERENCE_PROMPTS)} reference previews")

    # ── Async results ────────────────────────────────────────────────────

    async def apply_result(self, job: Job, handle: CapabilityHandle, payload: CallbackPayload) -> bool:
        """
        Apply a provider result to a job suspended on ``handle``.

        Caller holds the job lock and has already resolved the handle.
        Returns True when the job is back in ``processing`` and should be
        driven on; False when it was failed.
        """
        step = handle.step

        if job.cancel_requested:
            await self.fail(job, "cancelled", failed_step=step)
            return False
        if not payload.succeeded:
            await self.fail(job, f"{step.value} failed: {payload.error_message}", failed_step=step)
            return False

        result = payload.payload or {}
        try:
            if step == PipelineStep.VIDEO_GEN:
                url = extract_video_url(result)
                if not url:
                    raise CapabilityError("Video provider returned no video")
                job.outputs.append(Artifact(step=step, url=url, kind="video"))
            elif step == PipelineStep.TRAIN:
                await self._record_trained_model(job, result)
            else:
                raise PipelineError(f"{step.value} is not an async step")
        except Exception as e:
            logger.exception(f"[{job.id}] Could not apply {step.value} result")
            await self.fail(job, f"{step.value} failed: {e}", failed_step=step)
            return False

        job.pending_handle = None
        job.callback_deadline = None
        job.status = JobStatus.PROCESSING
        self._complete_step(job, step)
        self._store.save_job(job, expected_status=JobStatus.AWAITING_CALLBACK)
        logger.info(f"[{job.id}] {step.value} result received ({job.progress}%)")
        return True

    async def _record_trained_model(self, job: Job, result: dict) -> None:
        config: TrainingJobConfig = job.config
        url = extract_model_url(result)
        if not url:
            raise CapabilityError("Training provider returned no model file")

        artifact = Artifact(step=PipelineStep.TRAIN, url=url, kind="model")
        durable = await self._archive(
            job.account_id, job.id, artifact, key=identity_model_key(config.identity_id)
        )
        job.outputs.append(durable)

        identity = self._store.get_identity(config.identity_id)
        if identity is not None:
            identity = identity.model_copy(update={"model_url": durable.url, "status": "ready"})
            self._store.save_identity(identity)
            logger.info(f"[{job.id}] Identity {identity.id} is ready")

    # ── Terminal transitions ─────────────────────────────────────────────

    async def _finalize(self, job: Job) -> None:
        prior = job.status
        try:
            job.outputs = list(await asyncio.gather(*(
                self._archive(job.account_id, job.id, a, index=i) for i, a in enumerate(job.outputs)
            )))
        except Exception as e:
            logger.exception(f"[{job.id}] Archiving outputs failed")
            await self.fail(job, f"Archiving outputs failed: {e}")
            return

        refund = self._ledger.settle(job)
        if job.config.require_review:
            job.status = JobStatus.REVIEW
            job.progress = max(job.progress, REVIEW_PROGRESS)
        else:
            job.status = JobStatus.COMPLETED
            job.progress = COMPLETE_PROGRESS
        self._store.save_job(job, expected_status=prior)
        self._ledger.refund(job.account_id, job.id, refund, LedgerReason.UNUSED_RESERVATION)

        metrics.inc_counter(f"jobs.{job.status.value}")
        logger.info(
            f"[{job.id}] {job.status.value}: {len(job.outputs)} outputs, "
            f"{job.cost_accrued}/{job.price} credits used"
        )
        self._notifier.notify(job)

    async def fail(
        self,
        job: Job,
        error: str,
        failed_step: Optional[PipelineStep] = None,
        reason: LedgerReason = LedgerReason.JOB_REFUND,
    ) -> None:
        """
        Fail the job and refund what it still holds (plus ``failed_step``'s
        charge). Caller holds the job lock.
        """
        prior = job.status
        job.status = JobStatus.FAILED
        job.error = error
        job.pending_handle = None
        job.callback_deadline = None
        refund = self._ledger.settle(job, failed_step)
        self._store.save_job(job, expected_status=prior)
        self._ledger.refund(job.account_id, job.id, refund, reason)

        if isinstance(job.config, TrainingJobConfig):
            identity = self._store.get_identity(job.config.identity_id)
            if identity is not None and identity.status == "training":
                self._store.save_identity(identity.model_copy(update={"status": "failed"}))

        metrics.inc_counter("jobs.failed")
        metrics.record_error("pipeline", failed_step.value if failed_step else "job", error, job.account_id)
        logger.error(f"[{job.id}] Failed at {job.current_step.value}: {error} (refunded {refund})")
        self._notifier.notify(job)
