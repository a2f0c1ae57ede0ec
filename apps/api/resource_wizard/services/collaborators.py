"""
Contracts the wizard core consumes from external services.

The default implementations live next door (llm.py, image.py, characters.py,
storage.py); tests substitute fakes that satisfy the same protocols.
"""

from typing import Any, Dict, List, Optional, Protocol

from resource_wizard.models.dto import (
    AssetRecord,
    CharacterMode,
    DetectedCharacter,
    RawDetectedCharacter,
    ResourceKind,
    ResourceRecord,
    StylePreset,
)


class ContentGenerator(Protocol):
    async def generate(
        self,
        kind: ResourceKind,
        description: str,
        style: Optional[StylePreset] = None,
        character_ids: Optional[List[str]] = None,
        character_mode: Optional[CharacterMode] = None,
    ) -> Dict[str, Any]:
        """Structured content; may carry a `detectedCharacters` list."""
        ...


class CharacterCreator(Protocol):
    async def create_detected(
        self,
        owner_id: str,
        style: Optional[StylePreset],
        characters: List[RawDetectedCharacter],
    ) -> List[DetectedCharacter]:
        ...


class CharacterStore(Protocol):
    async def update_prompt_fragment(self, character_id: str, prompt_fragment: str) -> None:
        ...


class ReferenceEnsurer(Protocol):
    async def ensure_reference(
        self, character_id: str, style: StylePreset, force: bool = False
    ) -> Optional[str]:
        """Idempotent unless `force`. Returns the portrait URL when one exists."""
        ...


class ImageGenerator(Protocol):
    async def generate(
        self,
        owner_id: str,
        asset_kind: str,
        asset_key: str,
        prompt: str,
        style: Optional[StylePreset] = None,
        character_ids: Optional[List[str]] = None,
        include_text: bool = False,
        aspect: str = "1:1",
    ) -> str:
        ...

    async def generate_green_screen(
        self,
        owner_id: str,
        asset_kind: str,
        asset_key: str,
        prompt: str,
        style: Optional[StylePreset] = None,
        character_ids: Optional[List[str]] = None,
        include_text: bool = False,
        aspect: str = "1:1",
    ) -> str:
        ...


class DraftStore(Protocol):
    async def create_draft(
        self,
        owner_key: str,
        kind: ResourceKind,
        name: str,
        description: str,
        style: Optional[StylePreset],
        content: Dict[str, Any],
    ) -> str:
        ...

    async def update_draft(
        self,
        resource_id: str,
        name: Optional[str] = None,
        content: Optional[Dict[str, Any]] = None,
        style: Optional[StylePreset] = None,
    ) -> None:
        ...

    async def get_resource(self, resource_id: str) -> Optional[ResourceRecord]:
        ...

    async def list_drafts(self, owner_key: str, kind: ResourceKind) -> List[ResourceRecord]:
        ...


class AssetLookup(Protocol):
    async def list_assets(self, owner_id: str) -> List[AssetRecord]:
        """Latest version of every asset attached to the owner."""
        ...
