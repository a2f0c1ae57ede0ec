"""
Draft Resume Tests
"""

import pytest

from conftest import FakeDraftStore
from resource_wizard.models.dto import ContentStatus, ResourceKind, ResumePhase, WizardStep
from resource_wizard.services.drafts import DraftCoordinator


@pytest.fixture
def drafts_with():
    def make(*records):
        store = FakeDraftStore()
        for record in records:
            store.add(record)
        return store

    return make


class TestDraftCoordinator:
    @pytest.mark.asyncio
    async def test_offers_most_recent_draft(self, make_controller, draft_record, drafts_with):
        store = drafts_with(
            draft_record("res_old", age_minutes=60),
            draft_record("res_new", age_minutes=5),
            draft_record("res_done", age_minutes=1, status="complete"),
            draft_record("res_other_kind", kind=ResourceKind.poster, age_minutes=0),
        )
        coordinator = DraftCoordinator(make_controller(draft_store=store))

        assert await coordinator.check() == "res_new"
        assert coordinator.prompt_open is True
        assert coordinator.controller.state.resume_draft_id == "res_new"

    @pytest.mark.asyncio
    async def test_no_drafts_resolves(self, make_controller):
        coordinator = DraftCoordinator(make_controller())

        assert await coordinator.check() is None
        assert coordinator.prompt_open is False
        assert coordinator.controller.state.resume_phase == ResumePhase.resolved

    @pytest.mark.asyncio
    async def test_prompt_appears_once(self, make_controller, draft_record, drafts_with):
        coordinator = DraftCoordinator(make_controller(draft_store=drafts_with(draft_record())))

        assert await coordinator.check() == "res_old"
        coordinator.start_fresh()
        assert coordinator.prompt_open is False

        assert await coordinator.check() is None
        assert coordinator.prompt_open is False
        assert coordinator.controller.state.resume_draft_id is None

    @pytest.mark.asyncio
    async def test_resume_opens_draft(self, make_controller, draft_record, drafts_with):
        controller = make_controller(draft_store=drafts_with(draft_record(name="Ocean Deck")))
        coordinator = DraftCoordinator(controller)
        await coordinator.check()

        assert await coordinator.resume() is True

        state = controller.state
        assert state.resume_phase == ResumePhase.resolved
        assert state.is_edit_mode is True
        assert state.resource_id == "res_old"
        assert state.name == "Ocean Deck"
        assert state.content_status == ContentStatus.ready
        assert len(state.image_items) == 1

        # resolved for good
        assert await coordinator.resume() is False
        assert await coordinator.check() is None

    @pytest.mark.asyncio
    async def test_resume_without_offer(self, make_controller):
        coordinator = DraftCoordinator(make_controller())
        assert await coordinator.resume() is False

    @pytest.mark.asyncio
    async def test_waits_while_wizard_not_fresh(self, make_controller, draft_record, drafts_with):
        controller = make_controller(draft_store=drafts_with(draft_record()))
        coordinator = DraftCoordinator(controller)
        controller.store.update({"content_status": ContentStatus.generating})

        assert await coordinator.check() is None
        assert controller.state.resume_phase == ResumePhase.uninitialized

        controller.store.update({"content_status": ContentStatus.idle})
        assert await coordinator.check() == "res_old"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "patch",
        [
            {"is_edit_mode": True},
            {"resource_id": "res_current"},
            {"current_step": WizardStep.review},
        ],
    )
    async def test_no_offer_outside_fresh_wizard(self, make_controller, draft_record, drafts_with, patch):
        controller = make_controller(draft_store=drafts_with(draft_record()))
        controller.store.update(patch)

        assert await DraftCoordinator(controller).check() is None

    @pytest.mark.asyncio
    async def test_no_offer_without_owner(self, make_controller, draft_record, drafts_with):
        controller = make_controller(owner_key=None, draft_store=drafts_with(draft_record()))
        assert await DraftCoordinator(controller).check() is None

    @pytest.mark.asyncio
    async def test_other_owner_drafts_ignored(self, make_controller, draft_record, drafts_with):
        store = drafts_with(draft_record(owner_key="someone-else-1234567890"))
        coordinator = DraftCoordinator(make_controller(draft_store=store))

        assert await coordinator.check() is None
        assert coordinator.controller.state.resume_phase == ResumePhase.resolved
