"""
Character Linker: splice detected characters into structured content

Positional keys (`card_0`, `page_3`, `token_1`, ...) come from each kind's
strategy in extractors.py, so the linker never switches on resource kind itself.
"""

import copy
from typing import Any, Dict, Iterable, List, Mapping

from resource_wizard.models.dto import DetectedCharacter, ImageJob, ResourceKind
from resource_wizard.services.extractors import get_strategy

WORLD_CONTEXT_HEADER = (
    "Characters in this world (keep their look consistent across every "
    "illustration, even where they do not appear)"
)


def build_character_map(results: Iterable[DetectedCharacter]) -> Dict[str, List[str]]:
    """
    Content-item key -> ordered character ids.

    A key may collect several characters and a character may sit under several
    keys.
    """
    key_to_ids: Dict[str, List[str]] = {}
    for result in results:
        for key in result.appears_on:
            bucket = key_to_ids.setdefault(key, [])
            if result.character_id not in bucket:
                bucket.append(result.character_id)
    return key_to_ids


def link_characters(
    kind: ResourceKind,
    content: Dict[str, Any],
    character_map: Mapping[str, List[str]],
) -> Dict[str, Any]:
    """Return a copy of content with mapped ids appended to each item's characterIds."""
    linked = copy.deepcopy(content)
    for key, item in get_strategy(kind).linkable_items(linked):
        ids = character_map.get(key)
        if not ids:
            continue
        existing = list(item.get("characterIds") or [])
        existing.extend(cid for cid in ids if cid not in existing)
        item["characterIds"] = existing
    return linked


def unlink_character(
    kind: ResourceKind, content: Dict[str, Any], character_id: str
) -> Dict[str, Any]:
    """Return a copy of content with one character filtered out of every item."""
    unlinked = copy.deepcopy(content)
    for _, item in get_strategy(kind).linkable_items(unlinked):
        if "characterIds" not in item:
            continue
        remaining = [cid for cid in item["characterIds"] or [] if cid != character_id]
        if remaining:
            item["characterIds"] = remaining
        else:
            # absent, never []
            del item["characterIds"]
    return unlinked


def world_context(characters: Iterable[DetectedCharacter]) -> str:
    lines = [
        f"{c.name}: {c.prompt_fragment.strip()}"
        for c in characters
        if c.prompt_fragment and c.prompt_fragment.strip()
    ]
    if not lines:
        return ""
    return f"{WORLD_CONTEXT_HEADER}:\n" + "\n".join(f"- {line}" for line in lines)


def apply_world_context(
    jobs: List[ImageJob], characters: Iterable[DetectedCharacter]
) -> List[ImageJob]:
    """Prefix every job prompt with the shared description of linked characters."""
    context = world_context(characters)
    if not context:
        return list(jobs)
    return [job.model_copy(update={"prompt": f"{context}\n\n{job.prompt}"}) for job in jobs]


# ==================== Suggestion Reconciliation ====================


def has_pending_suggestion(character: DetectedCharacter) -> bool:
    """Offer accept/dismiss only while a differing, undismissed suggestion exists."""
    suggested = (character.suggested_prompt_fragment or "").strip()
    if not suggested or character.suggestion_dismissed:
        return False
    return suggested != (character.prompt_fragment or "").strip()


def accept_suggestion(character: DetectedCharacter) -> DetectedCharacter:
    if not character.suggested_prompt_fragment:
        return character
    return character.model_copy(
        update={
            "prompt_fragment": character.suggested_prompt_fragment,
            "suggestion_dismissed": True,
        }
    )


def dismiss_suggestion(character: DetectedCharacter) -> DetectedCharacter:
    return character.model_copy(update={"suggestion_dismissed": True})
