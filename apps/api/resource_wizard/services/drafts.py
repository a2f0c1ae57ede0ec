"""
Draft Coordinator: offer to resume the owner's latest draft, once per session.

Phases (WizardState.resume_phase):

    uninitialized -> prompting -> resolved
    uninitialized -> resolved            (no drafts to offer)

Once resolved the prompt never reappears for this wizard.
"""

from typing import Optional

import structlog

from resource_wizard.models.dto import ContentStatus, ResourceRecord, ResumePhase, WizardStep
from resource_wizard.services.wizard import WizardController

logger = structlog.get_logger()


class DraftCoordinator:
    def __init__(self, controller: WizardController):
        self.controller = controller

    @property
    def prompt_open(self) -> bool:
        return self.controller.state.resume_phase == ResumePhase.prompting

    def _waiting(self) -> bool:
        state = self.controller.state
        return (
            not self.controller.owner_key
            or state.is_edit_mode
            or bool(state.resource_id)
            or state.current_step > WizardStep.describe
            or state.content_status != ContentStatus.idle
        )

    async def check(self) -> Optional[str]:
        """
        Look for a draft to offer. Returns the offered draft id, if any.

        Does nothing unless the phase is still uninitialized; while the wizard is
        not in a fresh state the phase is left alone so a later check can run.
        """
        store = self.controller.store
        if store.state.resume_phase != ResumePhase.uninitialized or self._waiting():
            return None

        drafts = await self.controller.draft_store.list_drafts(
            self.controller.owner_key, self.controller.kind
        )
        drafts = [d for d in drafts if d.status == "draft"]

        # state may have moved on while listing
        if store.state.resume_phase != ResumePhase.uninitialized:
            return None

        latest = _most_recent(drafts)
        if latest is None:
            store.update({"resume_phase": ResumePhase.resolved})
            return None

        store.update({"resume_phase": ResumePhase.prompting, "resume_draft_id": latest.id})
        logger.info("Offering draft resume", resource_id=latest.id, kind=self.controller.kind.value)
        return latest.id

    async def resume(self) -> bool:
        store = self.controller.store
        draft_id = store.state.resume_draft_id
        if store.state.resume_phase != ResumePhase.prompting or not draft_id:
            return False
        store.update({"resume_phase": ResumePhase.resolved})
        return await self.controller.open_existing(draft_id)

    def start_fresh(self) -> None:
        store = self.controller.store
        if store.state.resume_phase == ResumePhase.resolved:
            return
        store.update({"resume_phase": ResumePhase.resolved, "resume_draft_id": None})


def _most_recent(drafts) -> Optional[ResourceRecord]:
    if not drafts:
        return None
    return max(drafts, key=lambda d: (d.updated_at is not None, d.updated_at or 0))
