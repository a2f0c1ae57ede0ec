"""
Character Service: detected-character create/match, prompt fragments, styled portraits
"""

import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select

from resource_wizard.core.database import AsyncSessionLocal
from resource_wizard.core.errors import CharacterDetectionError, WizardError
from resource_wizard.models.db import Character, StyledPortrait
from resource_wizard.models.dto import DetectedCharacter, RawDetectedCharacter, StylePreset
from resource_wizard.services.image import generate_image

logger = structlog.get_logger()


def new_character_id() -> str:
    return f"char_{datetime.utcnow().strftime('%Y%m%d')}_{uuid.uuid4().hex[:8]}"


def _name_key(name: str) -> str:
    return name.lower().strip()


def build_styled_reference_prompt(character: Character, style: StylePreset) -> str:
    parts = []
    if character.prompt_fragment:
        parts.append(character.prompt_fragment)
    parts.append(f'Create a character reference illustration of "{character.name}".')
    if character.description:
        parts.append(character.description)
    if character.personality:
        parts.append(f"Their personality is: {character.personality}")
    if style.illustration_style:
        parts.append(
            "IMPORTANT: follow the illustration style guidance EXACTLY: " + style.illustration_style
        )
    parts.append(
        f"Using these colors: {style.colors.primary} (primary), "
        f"{style.colors.secondary} (secondary), {style.colors.accent} (accent)"
    )
    parts.append(
        "Create a clear, centered character portrait in 3:4 portrait orientation with a clean "
        "white background, shown from the waist up with a neutral, friendly expression, "
        "suitable as a reference for consistent reproduction in later illustrations."
    )
    parts.append("IMPORTANT: Do NOT include any text, words, letters, or labels in the image.")
    return "\n".join(parts)


class CharacterService:
    """CharacterCreator, CharacterStore and ReferenceEnsurer over the characters tables"""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def create_detected(
        self,
        owner_id: str,
        style: Optional[StylePreset],
        characters: List[RawDetectedCharacter],
    ) -> List[DetectedCharacter]:
        """
        Match each detected character against the owner's characters by name
        (case-insensitive, trimmed), creating the ones that do not exist yet.

        A matched character with an empty prompt fragment takes the detected visual
        description. A matched character whose fragment differs from the detected
        one gets it back as `suggested_prompt_fragment`; it is not overwritten.
        """
        results: List[DetectedCharacter] = []
        async with self.session_factory() as session:
            try:
                existing = await session.execute(
                    select(Character).where(Character.owner_key == owner_id)
                )
                by_name = {_name_key(c.name): c for c in existing.scalars().all()}

                for raw in characters:
                    if not raw.name.strip():
                        continue
                    visual = raw.visual_description.strip()
                    match = by_name.get(_name_key(raw.name))

                    if match is None:
                        character = Character(
                            id=new_character_id(),
                            owner_key=owner_id,
                            name=raw.name.strip(),
                            description=raw.description,
                            personality=raw.personality,
                            prompt_fragment=visual,
                            style_id=style.id if style else None,
                        )
                        session.add(character)
                        by_name[_name_key(raw.name)] = character
                        results.append(
                            DetectedCharacter(
                                name=character.name,
                                character_id=character.id,
                                appears_on=raw.appears_on,
                                is_new=True,
                                prompt_fragment=visual,
                            )
                        )
                        continue

                    stored = (match.prompt_fragment or "").strip()
                    if not stored and visual:
                        match.prompt_fragment = visual
                    suggested = visual if visual and stored and visual != stored else None
                    results.append(
                        DetectedCharacter(
                            name=match.name,
                            character_id=match.id,
                            appears_on=raw.appears_on,
                            is_new=False,
                            prompt_fragment=stored or visual,
                            suggested_prompt_fragment=suggested,
                        )
                    )

                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error("Failed to create detected characters", owner_id=owner_id, error=str(e))
                raise CharacterDetectionError(f"Failed to create detected characters: {e}") from e

        logger.info(
            "Detected characters resolved",
            owner_id=owner_id,
            total=len(results),
            created=sum(1 for r in results if r.is_new),
        )
        return results

    async def update_prompt_fragment(self, character_id: str, prompt_fragment: str) -> None:
        async with self.session_factory() as session:
            character = await session.get(Character, character_id)
            if character is None:
                raise CharacterDetectionError(f"Character not found: {character_id}")
            character.prompt_fragment = prompt_fragment
            await session.commit()

    async def ensure_reference(
        self, character_id: str, style: StylePreset, force: bool = False
    ) -> Optional[str]:
        """
        Styled reference portrait for the character, generated at most once per
        style unless `force`. Returns None when it cannot be produced.
        """
        async with self.session_factory() as session:
            character = await session.get(Character, character_id)
            if character is None:
                logger.warning("Reference requested for unknown character", character_id=character_id)
                return None

            result = await session.execute(
                select(StyledPortrait).where(
                    StyledPortrait.character_id == character_id,
                    StyledPortrait.style_id == style.id,
                )
            )
            portrait = result.scalar_one_or_none()
            if portrait is not None and not force:
                return portrait.image_url

            prompt = build_styled_reference_prompt(character, style)
            try:
                url = await generate_image(prompt, "3:4", asset_key=f"portrait:{character_id}")
            except WizardError as e:
                logger.warning(
                    "Styled portrait generation failed",
                    character_id=character_id,
                    style_id=style.id,
                    error=str(e),
                )
                return None

            if portrait is None:
                session.add(
                    StyledPortrait(
                        character_id=character_id,
                        style_id=style.id,
                        image_url=url,
                        prompt=prompt,
                    )
                )
            else:
                portrait.image_url = url
                portrait.prompt = prompt
            await session.commit()

        logger.info("Styled portrait ready", character_id=character_id, style_id=style.id)
        return url
