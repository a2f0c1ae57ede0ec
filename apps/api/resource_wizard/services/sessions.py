"""
In-memory wizard sessions (one WizardController per open wizard)
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from resource_wizard.models.dto import ResourceKind, StylePreset
from resource_wizard.services.batch_runner import BatchRunner
from resource_wizard.services.characters import CharacterService
from resource_wizard.services.drafts import DraftCoordinator
from resource_wizard.services.image import ImageService
from resource_wizard.services.llm import LLMContentGenerator
from resource_wizard.services.storage import ResourceStore
from resource_wizard.services.wizard import WizardController

logger = structlog.get_logger()


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class WizardSession:
    def __init__(self, session_id: str, owner_key: str, controller: WizardController):
        self.id = session_id
        self.owner_key = owner_key
        self.controller = controller
        self.drafts = DraftCoordinator(controller)
        self.created_at = utcnow()


def build_controller(
    kind: ResourceKind, owner_key: str, style: Optional[StylePreset] = None
) -> WizardController:
    """Controller wired to the default LLM, image and database collaborators"""
    store = ResourceStore()
    characters = CharacterService()
    return WizardController(
        kind=kind,
        owner_key=owner_key,
        content_generator=LLMContentGenerator(),
        draft_store=store,
        character_creator=characters,
        character_store=characters,
        reference_ensurer=characters,
        asset_lookup=store,
        runner=BatchRunner(ImageService(store), reference_ensurer=characters),
        style=style,
    )


class SessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, WizardSession] = {}

    def create(
        self,
        kind: ResourceKind,
        owner_key: str,
        style: Optional[StylePreset] = None,
        controller: Optional[WizardController] = None,
    ) -> WizardSession:
        session_id = f"wiz_{uuid.uuid4().hex[:12]}"
        controller = controller or build_controller(kind, owner_key, style)
        session = WizardSession(session_id, owner_key, controller)
        self._sessions[session_id] = session
        logger.info("Wizard session created", session_id=session_id, kind=ResourceKind(kind).value)
        return session

    def get(self, session_id: str) -> Optional[WizardSession]:
        return self._sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


sessions = SessionRegistry()
