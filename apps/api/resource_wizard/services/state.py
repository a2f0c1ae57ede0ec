"""
Wizard state store and job status reducer

WizardStore.update() is the single mutation point for a WizardState. It takes
either a patch dict or a function of the *current* state returning a patch, so
concurrent job completions never write through a stale snapshot.
"""

from typing import Any, Callable, Dict, Iterable, List, Union

import structlog

from resource_wizard.core.errors import InvalidTransitionError
from resource_wizard.models.dto import ImageJob, JobEvent, JobStatus, WizardState

logger = structlog.get_logger()

Patch = Dict[str, Any]
StateUpdater = Union[Patch, Callable[[WizardState], Patch]]

ALLOWED_TRANSITIONS = {
    JobStatus.pending: {JobStatus.generating},
    JobStatus.generating: {JobStatus.complete, JobStatus.error},
    JobStatus.error: {JobStatus.generating},
    JobStatus.complete: set(),
}


class WizardStore:
    def __init__(self, state: WizardState):
        self._state = state

    @property
    def state(self) -> WizardState:
        return self._state

    def update(self, updates_or_fn: StateUpdater) -> WizardState:
        updates = updates_or_fn(self._state) if callable(updates_or_fn) else updates_or_fn
        if not updates:
            return self._state

        unknown = set(updates) - set(WizardState.model_fields)
        if unknown:
            raise ValueError(f"Unknown wizard state fields: {sorted(unknown)}")
        if "generated_content" in updates and "image_items" not in updates:
            raise ValueError("generated_content must be updated together with image_items")
        if "image_items" in updates:
            keys = [job.asset_key for job in updates["image_items"]]
            if len(keys) != len(set(keys)):
                raise ValueError("image_items asset keys must be unique")

        self._state = self._state.model_copy(update=updates)
        return self._state


def check_transition(job: ImageJob, status: JobStatus) -> None:
    if status not in ALLOWED_TRANSITIONS[job.status]:
        raise InvalidTransitionError(job.asset_key, job.status.value, status.value)


def apply_job_events(state: WizardState, events: Iterable[JobEvent]) -> Patch:
    """
    Reduce job events against the current state.

    An event whose asset key no longer matches the job at its index (the list was
    re-derived mid-run) is dropped.
    """
    items: List[ImageJob] = list(state.image_items)
    changed = False
    for event in events:
        if event.index >= len(items) or items[event.index].asset_key != event.asset_key:
            logger.warning(
                "Dropping stale job event",
                index=event.index,
                asset_key=event.asset_key,
                status=event.status.value,
            )
            continue
        job = items[event.index]
        check_transition(job, event.status)
        items[event.index] = job.model_copy(update={"status": event.status, "error": event.error})
        changed = True
    return {"image_items": items} if changed else {}


def apply_job_event(state: WizardState, event: JobEvent) -> Patch:
    return apply_job_events(state, [event])


def reset_all_jobs(state: WizardState) -> Patch:
    """The only path that forces a job back to pending."""
    return {
        "image_items": [
            job.model_copy(update={"status": JobStatus.pending, "error": None})
            for job in state.image_items
        ]
    }
