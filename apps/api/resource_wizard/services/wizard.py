"""
Wizard Controller

Drives one resource through Describe -> Review -> Generate -> Export. The
controller owns its WizardState through a WizardStore; nothing else writes to it.

Side effects happen on *leaving* a step (see next()):

    Describe  generate content if none yet (or the last attempt failed)
    Review+   create the draft, or update it when one exists
    ->Generate  restore completed job statuses from persisted assets
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from resource_wizard.core.config import settings
from resource_wizard.models.dto import (
    STEP_LABELS,
    STEP_TITLES,
    TOTAL_STEPS,
    CharacterMode,
    CharacterSelection,
    ContentStatus,
    DetectedCharacter,
    DetectionStatus,
    ImageJob,
    JobStatus,
    RawDetectedCharacter,
    ResourceKind,
    ResumePhase,
    StepInfo,
    StylePreset,
    WizardState,
    WizardStep,
)
from resource_wizard.services import linker
from resource_wizard.services.batch_runner import BatchRunner
from resource_wizard.services.collaborators import (
    AssetLookup,
    CharacterCreator,
    CharacterStore,
    ContentGenerator,
    DraftStore,
    ReferenceEnsurer,
)
from resource_wizard.services.extractors import extract_jobs, merge_job_statuses
from resource_wizard.services.state import Patch, WizardStore

logger = structlog.get_logger()


class WizardController:
    def __init__(
        self,
        kind: ResourceKind,
        owner_key: Optional[str],
        content_generator: ContentGenerator,
        draft_store: DraftStore,
        character_creator: Optional[CharacterCreator] = None,
        character_store: Optional[CharacterStore] = None,
        reference_ensurer: Optional[ReferenceEnsurer] = None,
        asset_lookup: Optional[AssetLookup] = None,
        runner: Optional[BatchRunner] = None,
        style: Optional[StylePreset] = None,
    ):
        self.kind = ResourceKind(kind)
        self.owner_key = owner_key
        self.content_generator = content_generator
        self.draft_store = draft_store
        self.character_creator = character_creator
        self.character_store = character_store
        self.reference_ensurer = reference_ensurer
        self.asset_lookup = asset_lookup
        self.runner = runner
        self.store = WizardStore(WizardState(resource_kind=self.kind, style=style))

    @property
    def state(self) -> WizardState:
        return self.store.state

    # ==================== Navigation ====================

    def is_step_complete(self, step: int) -> bool:
        state = self.state
        if step == WizardStep.describe:
            return bool(state.description.strip())
        if step == WizardStep.review:
            return state.content_status == ContentStatus.ready and bool(state.name.strip())
        if step == WizardStep.generate:
            return any(job.status == JobStatus.complete for job in state.image_items)
        if step == WizardStep.export:
            return True
        return False

    def can_go_next(self) -> bool:
        return self.is_step_complete(self.state.current_step)

    def steps(self) -> List[StepInfo]:
        return [
            StepInfo(
                index=i,
                label=STEP_LABELS[i],
                title=STEP_TITLES[i],
                complete=self.is_step_complete(i),
            )
            for i in range(TOTAL_STEPS)
        ]

    async def next(self) -> WizardStep:
        """
        Advance one step, running the side effects of the step being left.

        Stays put (and returns the current step) when the step is incomplete, a
        navigation is already in flight, or content generation did not end ready.
        DraftSaveError propagates and the step does not advance.
        """
        state = self.state
        step = state.current_step
        if state.is_navigating or step == WizardStep.export or not self.can_go_next():
            return step

        self.store.update({"is_navigating": True})
        try:
            if step == WizardStep.describe:
                if state.content_status in (ContentStatus.idle, ContentStatus.error):
                    await self.generate_content()
                if self.state.content_status != ContentStatus.ready:
                    return step

            if step >= WizardStep.review:
                await self.save_draft()

            target = WizardStep(step + 1)
            if target == WizardStep.generate:
                await self.restore_job_statuses()

            self.store.update({"current_step": target})
            logger.info("Wizard step advanced", kind=self.kind.value, step=target.name)
            return target
        finally:
            self.store.update({"is_navigating": False})

    def back(self) -> WizardStep:
        target = WizardStep(max(self.state.current_step - 1, 0))
        self.store.update({"current_step": target})
        return target

    async def go_to(self, step: int) -> WizardStep:
        """
        Jump to any earlier step directly. Forward jumps advance one step at a
        time through next(), so every step left runs its side effects; the jump
        stops wherever next() does.
        """
        target = WizardStep(step)
        current = self.state.current_step
        if target <= current:
            self.store.update({"current_step": target})
            return target

        while current < target:
            advanced = await self.next()
            if advanced == current:
                break
            current = advanced
        return current

    def cancel_target(self) -> Dict[str, Optional[str]]:
        state = self.state
        if state.is_edit_mode and state.resource_id:
            return {"target": "resource", "resource_id": state.resource_id}
        return {"target": "dashboard", "resource_id": None}

    # ==================== Simple Setters ====================

    def set_description(self, description: str) -> None:
        self.store.update({"description": description})

    def set_name(self, name: str) -> None:
        self.store.update({"name": name})

    def set_character_selection(self, selection: Optional[CharacterSelection]) -> None:
        state = self.state
        self.store.update(
            {
                "character_selection": selection,
                **self._derive_patch(state.generated_content, selection, state.detected_characters),
            }
        )

    async def change_style(self, style: StylePreset) -> None:
        state = self.state
        self.store.update({"style": style})
        if not (state.is_edit_mode and state.resource_id):
            return

        await self.draft_store.update_draft(state.resource_id, style=style)
        selection = state.character_selection
        if self.reference_ensurer is None or selection is None:
            return
        results = await asyncio.gather(
            *[self.reference_ensurer.ensure_reference(cid, style) for cid in selection.character_ids],
            return_exceptions=True,
        )
        for character_id, result in zip(selection.character_ids, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Reference portrait unavailable after style change",
                    character_id=character_id,
                    style_id=style.id,
                    error=str(result),
                )

    # ==================== Content ====================

    async def generate_content(self) -> ContentStatus:
        """Generate content, then detect and link characters when possible."""
        state = self.state
        if not state.description.strip():
            return state.content_status

        self.store.update(
            {
                "content_status": ContentStatus.generating,
                "content_error": None,
                "detected_characters": [],
                "detected_characters_status": DetectionStatus.idle,
            }
        )
        selection = state.character_selection

        try:
            result = await self.content_generator.generate(
                self.kind,
                state.description,
                style=state.style,
                character_ids=list(selection.character_ids) if selection else None,
                character_mode=selection.mode if selection else None,
            )
        except Exception as e:
            logger.error("Content generation failed", kind=self.kind.value, error=str(e))
            self.store.update(
                {
                    "content_status": ContentStatus.error,
                    "content_error": str(e) or "Failed to generate content",
                }
            )
            return ContentStatus.error

        content = dict(result or {})
        raw_detected = content.pop("detectedCharacters", None) or []
        name = content.get("name") or state.name or state.description[: settings.content_name_max_length]

        if raw_detected and selection is None and self.owner_key and self.character_creator:
            self.store.update(
                {
                    "content_status": ContentStatus.ready,
                    "detected_characters_status": DetectionStatus.creating,
                    "name": name,
                    **self._derive_patch(content, None, []),
                }
            )
            if await self._detect_characters(content, raw_detected):
                return ContentStatus.ready
        elif selection is not None:
            self.store.update({"detected_characters_status": DetectionStatus.skipped})

        current = self.state
        self.store.update(
            {
                "content_status": ContentStatus.ready,
                "name": name,
                **self._derive_patch(content, current.character_selection, current.detected_characters),
            }
        )
        return ContentStatus.ready

    async def _detect_characters(self, content: Dict[str, Any], raw_detected: List[Any]) -> bool:
        """Create/match detected characters and link them. False means fall back."""
        try:
            characters = [
                RawDetectedCharacter.model_validate(raw)
                for raw in raw_detected
                if isinstance(raw, dict)
            ]
            results = await self.character_creator.create_detected(
                self.owner_key, self.state.style, characters
            )
            if results:
                linked = linker.link_characters(
                    self.kind, content, linker.build_character_map(results)
                )
                selection = CharacterSelection(
                    mode=CharacterMode.per_item,
                    character_ids=[r.character_id for r in results],
                )
        except Exception as e:
            logger.warning(
                "Character detection failed, keeping ungrouped content",
                kind=self.kind.value,
                error=str(e),
            )
            self.store.update({"detected_characters_status": DetectionStatus.idle})
            return False

        if not results:
            self.store.update({"detected_characters_status": DetectionStatus.idle})
            return False

        self.store.update(
            {
                "character_selection": selection,
                "detected_characters": results,
                "detected_characters_status": DetectionStatus.ready,
                **self._derive_patch(linked, selection, results),
            }
        )
        logger.info(
            "Detected characters linked",
            kind=self.kind.value,
            characters=len(results),
            new=sum(1 for r in results if r.is_new),
        )
        return True

    def _derive_jobs(
        self,
        content: Optional[Dict[str, Any]],
        selection: Optional[CharacterSelection],
        characters: List[DetectedCharacter],
    ) -> List[ImageJob]:
        jobs = extract_jobs(self.kind, content, selection)
        if characters:
            jobs = linker.apply_world_context(jobs, characters)
        return merge_job_statuses(jobs, self.state.image_items)

    def _derive_patch(
        self,
        content: Optional[Dict[str, Any]],
        selection: Optional[CharacterSelection],
        characters: List[DetectedCharacter],
    ) -> Patch:
        """Content and its jobs always travel in the same patch."""
        return {
            "generated_content": content,
            "image_items": self._derive_jobs(content, selection, characters),
        }

    def edit_content(self, content: Dict[str, Any]) -> None:
        content = dict(content)
        content.pop("detectedCharacters", None)
        state = self.state
        self.store.update(self._derive_patch(content, state.character_selection, state.detected_characters))

    def build_content(self) -> Dict[str, Any]:
        """Content as persisted: generated content plus the character selection."""
        state = self.state
        content = dict(state.generated_content or {})
        content.pop("detectedCharacters", None)
        if state.character_selection is not None:
            content["characters"] = state.character_selection.to_content()
        else:
            content.pop("characters", None)
        return content

    # ==================== Detected Characters ====================

    def _find_character(self, character_id: str) -> Optional[DetectedCharacter]:
        for character in self.state.detected_characters:
            if character.character_id == character_id:
                return character
        return None

    def _replace_character(self, updated: DetectedCharacter) -> None:
        def patch(prev: WizardState) -> Patch:
            characters = [
                updated if c.character_id == updated.character_id else c
                for c in prev.detected_characters
            ]
            return {
                "detected_characters": characters,
                **self._derive_patch(prev.generated_content, prev.character_selection, characters),
            }

        self.store.update(patch)

    async def update_character_prompt(self, character_id: str, prompt_fragment: str) -> bool:
        character = self._find_character(character_id)
        if character is None:
            return False
        if self.character_store is not None:
            await self.character_store.update_prompt_fragment(character_id, prompt_fragment)
        self._replace_character(character.model_copy(update={"prompt_fragment": prompt_fragment}))
        return True

    async def accept_suggestion(self, character_id: str) -> bool:
        character = self._find_character(character_id)
        if character is None or not linker.has_pending_suggestion(character):
            return False
        accepted = linker.accept_suggestion(character)
        if self.character_store is not None:
            await self.character_store.update_prompt_fragment(character_id, accepted.prompt_fragment)
        self._replace_character(accepted)
        return True

    def dismiss_suggestion(self, character_id: str) -> bool:
        character = self._find_character(character_id)
        if character is None:
            return False
        dismissed = linker.dismiss_suggestion(character)
        self.store.update(
            lambda prev: {
                "detected_characters": [
                    dismissed if c.character_id == character_id else c
                    for c in prev.detected_characters
                ]
            }
        )
        return True

    def remove_detected_character(self, character_id: str) -> bool:
        """Unlink a detected character from every item and from the selection."""
        if self._find_character(character_id) is None:
            return False

        def patch(prev: WizardState) -> Patch:
            characters = [c for c in prev.detected_characters if c.character_id != character_id]
            content = (
                linker.unlink_character(self.kind, prev.generated_content, character_id)
                if prev.generated_content
                else prev.generated_content
            )
            selection = prev.character_selection
            if selection is not None:
                remaining = [cid for cid in selection.character_ids if cid != character_id]
                selection = (
                    CharacterSelection(mode=selection.mode, character_ids=remaining)
                    if remaining
                    else None
                )
            return {
                "detected_characters": characters,
                "character_selection": selection,
                **self._derive_patch(content, selection, characters),
            }

        self.store.update(patch)
        return True

    # ==================== Persistence ====================

    async def open_existing(self, resource_id: str) -> bool:
        """Initialise edit mode from a stored resource. Runs once per controller."""
        if self.state.edit_phase != ResumePhase.uninitialized:
            return False
        self.store.update({"edit_phase": ResumePhase.prompting})

        record = await self.draft_store.get_resource(resource_id)
        if record is None:
            logger.warning("Resource to edit not found", resource_id=resource_id)
            self.store.update({"edit_phase": ResumePhase.resolved})
            return False

        content = dict(record.content or {})
        selection = CharacterSelection.from_content(content.pop("characters", None))
        content.pop("detectedCharacters", None)
        self.store.update(
            {
                "name": record.name,
                "description": record.description,
                "style": record.style or self.state.style,
                "resource_id": record.id,
                "character_selection": selection,
                "content_status": ContentStatus.ready,
                "content_error": None,
                "is_edit_mode": True,
                "edit_phase": ResumePhase.resolved,
                "generated_content": content,
                "image_items": extract_jobs(self.kind, content, selection),
            }
        )
        logger.info("Opened resource for editing", resource_id=record.id, kind=self.kind.value)
        return True

    async def save_draft(self) -> str:
        """Create the draft, or update it when one exists. DraftSaveError propagates."""
        state = self.state
        content = self.build_content()
        if state.resource_id:
            await self.draft_store.update_draft(
                state.resource_id, name=state.name, content=content, style=state.style
            )
            return state.resource_id

        resource_id = await self.draft_store.create_draft(
            owner_key=self.owner_key,
            kind=self.kind,
            name=state.name,
            description=state.description or f"{self.kind.value}: {state.name}",
            style=state.style,
            content=content,
        )
        self.store.update({"resource_id": resource_id})
        logger.info("Draft created", resource_id=resource_id, kind=self.kind.value)
        return resource_id

    async def restore_job_statuses(self) -> int:
        """
        Mark jobs complete whose asset already exists. Only while every job is
        still pending; returns the number of jobs restored.
        """
        state = self.state
        if self.asset_lookup is None or not state.resource_id or not state.image_items:
            return 0
        if any(job.status != JobStatus.pending for job in state.image_items):
            return 0

        assets = await self.asset_lookup.list_assets(state.resource_id)
        existing = {(a.asset_kind, a.asset_key) for a in assets if a.url}
        if not existing:
            return 0

        restored = []

        def patch(prev: WizardState) -> Patch:
            if any(job.status != JobStatus.pending for job in prev.image_items):
                return {}
            items = []
            for job in prev.image_items:
                if (job.asset_kind, job.asset_key) in existing:
                    job = job.model_copy(update={"status": JobStatus.complete, "error": None})
                    restored.append(job.asset_key)
                items.append(job)
            return {"image_items": items} if restored else {}

        self.store.update(patch)
        if restored:
            logger.info("Restored job statuses", resource_id=state.resource_id, restored=len(restored))
        return len(restored)

    # ==================== Images ====================

    def _require_runner(self) -> BatchRunner:
        if self.runner is None:
            raise RuntimeError("No batch runner configured for this wizard")
        return self.runner

    async def generate_remaining(self):
        return await self._require_runner().generate_remaining(self.store)

    async def retry_failed(self):
        return await self._require_runner().retry_failed(self.store)

    async def regenerate_all(self):
        return await self._require_runner().regenerate_all(self.store)

    @property
    def is_running(self) -> bool:
        return self.runner is not None and self.runner.is_running
