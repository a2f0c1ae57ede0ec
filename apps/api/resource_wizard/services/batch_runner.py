"""
Batch Runner: image jobs against the image generator with bounded concurrency

Batches run strictly one after another; jobs inside a batch run concurrently and
settle independently (a failed job never cancels its batch-mates). Every status
change is a JobEvent reduced against the store's current state.

Runs cannot be cancelled once dispatched.
"""

import asyncio
from typing import Iterable, List, Optional, Set, Tuple

import structlog

from resource_wizard.core.config import settings
from resource_wizard.core.errors import BatchInProgressError, InvalidTransitionError
from resource_wizard.models.dto import (
    BatchReport,
    ImageJob,
    JobEvent,
    JobStatus,
    StylePreset,
)
from resource_wizard.services.collaborators import ImageGenerator, ReferenceEnsurer
from resource_wizard.services.state import (
    WizardStore,
    apply_job_event,
    apply_job_events,
    reset_all_jobs,
)

logger = structlog.get_logger()

RUNNABLE = (JobStatus.pending, JobStatus.error)


class BatchRunner:
    def __init__(
        self,
        image_generator: ImageGenerator,
        reference_ensurer: Optional[ReferenceEnsurer] = None,
        batch_size: Optional[int] = None,
    ):
        self.image_generator = image_generator
        self.reference_ensurer = reference_ensurer
        self.batch_size = batch_size or settings.image_batch_size
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Entry Points ====================

    async def generate_remaining(self, store: WizardStore) -> BatchReport:
        """Run every pending job."""
        indices = [
            i for i, job in enumerate(store.state.image_items) if job.status == JobStatus.pending
        ]
        return await self.run(store, indices)

    async def retry_failed(self, store: WizardStore) -> BatchReport:
        """Run every failed job."""
        indices = [
            i for i, job in enumerate(store.state.image_items) if job.status == JobStatus.error
        ]
        return await self.run(store, indices)

    async def regenerate_all(self, store: WizardStore) -> BatchReport:
        """Reset every job to pending, discarding results and errors, then run all."""
        if self._running:
            raise BatchInProgressError()
        store.update(reset_all_jobs)
        return await self.run(store, range(len(store.state.image_items)))

    # ==================== Core Loop ====================

    async def run(self, store: WizardStore, indices: Iterable[int]) -> BatchReport:
        if self._running:
            raise BatchInProgressError()

        state = store.state
        owner_id = state.resource_id
        report = BatchReport()
        if not owner_id:
            logger.warning("Image run skipped, no resource to attach assets to")
            return report

        requested = list(indices)
        if not requested:
            return report

        self._running = True
        ensured: Set[Tuple[str, str]] = set()
        try:
            for start in range(0, len(requested), self.batch_size):
                batch = self._runnable(store, requested[start:start + self.batch_size])
                if not batch:
                    continue
                style = store.state.style

                await self._ensure_references([job for _, job in batch], style, ensured)

                store.update(
                    lambda prev: apply_job_events(
                        prev,
                        [
                            JobEvent(index=i, asset_key=job.asset_key, status=JobStatus.generating)
                            for i, job in batch
                        ],
                    )
                )
                logger.info(
                    "Dispatching image batch",
                    resource_id=owner_id,
                    batch=len(report.batches) + 1,
                    asset_keys=[job.asset_key for _, job in batch],
                )

                results = await asyncio.gather(
                    *[self._run_job(store, i, job, owner_id, style) for i, job in batch],
                    return_exceptions=True,
                )

                report.batches.append(len(batch))
                for result in results:
                    if result is True:
                        report.completed += 1
                    else:
                        report.failed += 1

            logger.info(
                "Image run finished",
                resource_id=owner_id,
                batches=report.batches,
                completed=report.completed,
                failed=report.failed,
            )
            return report
        finally:
            self._running = False

    def _runnable(self, store: WizardStore, indices: List[int]) -> List[Tuple[int, ImageJob]]:
        items = store.state.image_items
        batch = []
        for i in indices:
            if 0 <= i < len(items) and items[i].status in RUNNABLE:
                batch.append((i, items[i]))
            else:
                logger.debug("Skipping job that is not runnable", index=i)
        return batch

    async def _run_job(
        self,
        store: WizardStore,
        index: int,
        job: ImageJob,
        owner_id: str,
        style: Optional[StylePreset],
    ) -> bool:
        generate = (
            self.image_generator.generate_green_screen
            if job.green_screen
            else self.image_generator.generate
        )
        try:
            await generate(
                owner_id=owner_id,
                asset_kind=job.asset_kind,
                asset_key=job.asset_key,
                prompt=job.prompt,
                style=style,
                character_ids=job.character_ids,
                include_text=job.include_text,
                aspect=job.aspect,
            )
        except Exception as e:
            message = str(e) or "Unknown error"
            logger.warning("Image job failed", asset_key=job.asset_key, error=message)
            self._dispatch(
                store,
                JobEvent(index=index, asset_key=job.asset_key, status=JobStatus.error, error=message),
            )
            return False

        self._dispatch(
            store, JobEvent(index=index, asset_key=job.asset_key, status=JobStatus.complete)
        )
        return True

    @staticmethod
    def _dispatch(store: WizardStore, event: JobEvent) -> None:
        try:
            store.update(lambda prev: apply_job_event(prev, event))
        except InvalidTransitionError as e:
            # job was re-derived back to pending while this request was in flight
            logger.warning("Dropping job event", asset_key=event.asset_key, error=str(e))

    async def _ensure_references(
        self,
        jobs: List[ImageJob],
        style: Optional[StylePreset],
        ensured: Set[Tuple[str, str]],
    ) -> None:
        """Styled reference portrait per distinct character+style. Never fatal."""
        if self.reference_ensurer is None or style is None:
            return

        character_ids = []
        for job in jobs:
            for character_id in job.character_ids or []:
                pair = (character_id, style.id)
                if pair not in ensured:
                    ensured.add(pair)
                    character_ids.append(character_id)
        if not character_ids:
            return

        results = await asyncio.gather(
            *[self.reference_ensurer.ensure_reference(cid, style) for cid in character_ids],
            return_exceptions=True,
        )
        for character_id, result in zip(character_ids, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Reference portrait unavailable, generating without it",
                    character_id=character_id,
                    style_id=style.id,
                    error=str(result),
                )
