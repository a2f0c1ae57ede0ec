"""
Job Extractor: structured content -> ordered image generation jobs

One strategy per resource kind, registered in STRATEGIES. A strategy knows two
things about its content shape:

    derive_jobs(content, selection)  the image jobs, in display order
    linkable_items(content)          (positional key, item dict) pairs that can
                                     carry `characterIds` (used by the linker)

Everything here is pure: no I/O, no job status awareness. Every job starts
`pending`; callers that re-derive use merge_job_statuses() to carry statuses over.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple

from resource_wizard.models.dto import (
    CharacterSelection,
    ImageJob,
    JobStatus,
    ResourceKind,
)

Content = Dict[str, Any]
LinkableItem = Tuple[str, Dict[str, Any]]

BOOK_COVER_SUFFIX = (
    "Fill the entire image edge-to-edge with the illustration, no borders, frames, "
    "margins, or surrounding whitespace. Do NOT include any text, titles, or words in "
    "the image. Text will be overlaid separately. This is a full-bleed cover image."
)

# Job categories that receive the resource-level characters under each card game
# placement policy. No policy means every job.
PLACEMENT_CATEGORIES = {
    "backgrounds": {"background"},
    "icons": {"icon"},
    "both": {"background", "icon"},
    "none": set(),
}


def _dicts(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _item_ids(item: Dict[str, Any]) -> Optional[List[str]]:
    ids = item.get("characterIds")
    if isinstance(ids, list) and ids:
        return [str(i) for i in ids]
    return None


def _resolve_ids(
    item: Optional[Dict[str, Any]], fallback: Optional[List[str]]
) -> Optional[List[str]]:
    """Per-item links win over the resource-level selection."""
    linked = _item_ids(item) if item is not None else None
    if linked:
        return linked
    return list(fallback) if fallback else None


def _dedupe_keys(jobs: List[ImageJob]) -> List[ImageJob]:
    seen: Dict[str, int] = {}
    result = []
    for job in jobs:
        count = seen.get(job.asset_key, 0)
        seen[job.asset_key] = count + 1
        if count:
            job = job.model_copy(update={"asset_key": f"{job.asset_key}#{count}"})
        result.append(job)
    return result


class ResourceStrategy:
    """Base strategy. Subclasses set `kind` and implement both methods."""

    kind: ResourceKind

    def derive_jobs(
        self, content: Content, selection: Optional[CharacterSelection]
    ) -> List[ImageJob]:
        raise NotImplementedError

    def linkable_items(self, content: Content) -> Iterator[LinkableItem]:
        raise NotImplementedError

    @staticmethod
    def resource_ids(selection: Optional[CharacterSelection]) -> Optional[List[str]]:
        if selection is None or not selection.character_ids:
            return None
        return list(selection.character_ids)


STRATEGIES: Dict[ResourceKind, ResourceStrategy] = {}


def register(cls):
    STRATEGIES[cls.kind] = cls()
    return cls


def get_strategy(kind: ResourceKind) -> ResourceStrategy:
    try:
        return STRATEGIES[ResourceKind(kind)]
    except (KeyError, ValueError):
        raise ValueError(f"No job strategy registered for resource kind: {kind}")


# ==================== Strategies ====================


@register
class PosterStrategy(ResourceStrategy):
    kind = ResourceKind.poster

    def derive_jobs(self, content, selection):
        prompt = content.get("imagePrompt") or content.get("headline") or ""
        return [
            ImageJob(
                asset_key=content.get("imageAssetKey") or "poster_main",
                asset_kind="poster_image",
                prompt=f"Poster illustration: {prompt}",
                character_ids=_resolve_ids(content, self.resource_ids(selection)),
                include_text=True,
                aspect="3:4",
                label="Poster",
                group="Poster",
            )
        ]

    def linkable_items(self, content):
        yield "poster", content


@register
class FlashcardsStrategy(ResourceStrategy):
    kind = ResourceKind.flashcards

    def derive_jobs(self, content, selection):
        fallback = self.resource_ids(selection)
        jobs = []
        for i, card in enumerate(_dicts(content.get("cards"))):
            prompt = card.get("imagePrompt") or (
                f"Flashcard illustration for: {card.get('frontText', '')}"
            )
            jobs.append(
                ImageJob(
                    asset_key=card.get("frontImageAssetKey") or f"flashcard_front_{i}",
                    asset_kind="flashcard_front_image",
                    prompt=prompt,
                    character_ids=_resolve_ids(card, fallback),
                    include_text=True,
                    aspect="1:1",
                    label=f"Card {i + 1}",
                    group="Cards",
                )
            )
        return jobs

    def linkable_items(self, content):
        for i, card in enumerate(_dicts(content.get("cards"))):
            yield f"card_{i}", card


@register
class CardGameStrategy(ResourceStrategy):
    """
    Template card games: one background job per background, one green-screen icon
    job per icon, optional card back. Content without `backgrounds` is the legacy
    per-card format: one job per card.
    """

    kind = ResourceKind.card_game

    @staticmethod
    def is_legacy(content: Content) -> bool:
        return "backgrounds" not in content

    def derive_jobs(self, content, selection):
        if self.is_legacy(content):
            return self._derive_legacy(content, selection)

        resource_ids = self.resource_ids(selection)
        placement = content.get("characterPlacement")
        allowed = PLACEMENT_CATEGORIES.get(placement) if placement else None

        def fallback_for(category: str) -> Optional[List[str]]:
            if allowed is not None and category not in allowed:
                return None
            return resource_ids

        jobs = []
        for i, bg in enumerate(_dicts(content.get("backgrounds"))):
            label = bg.get("label") or f"Background {i + 1}"
            jobs.append(
                ImageJob(
                    asset_key=bg.get("imageAssetKey") or f"card_bg:{bg.get('id', i)}",
                    asset_kind="card_bg",
                    prompt=bg.get("imagePrompt") or f"Card background: {label}",
                    character_ids=_resolve_ids(bg, fallback_for("background")),
                    include_text=False,
                    aspect="3:4",
                    label=label,
                    group="Backgrounds",
                )
            )

        for i, icon in enumerate(_dicts(content.get("icons"))):
            label = icon.get("label") or f"Icon {i + 1}"
            jobs.append(
                ImageJob(
                    asset_key=icon.get("imageAssetKey") or f"card_icon:{icon.get('id', i)}",
                    asset_kind="card_icon",
                    prompt=icon.get("imagePrompt") or f"Card icon: {label}",
                    character_ids=_resolve_ids(icon, fallback_for("icon")),
                    include_text=False,
                    aspect="1:1",
                    green_screen=True,
                    label=label,
                    group="Icons",
                )
            )

        card_back = content.get("cardBack")
        if isinstance(card_back, dict) and card_back.get("imagePrompt"):
            jobs.append(
                ImageJob(
                    asset_key=card_back.get("imageAssetKey") or "card_back",
                    asset_kind="card_back",
                    prompt=card_back["imagePrompt"],
                    character_ids=_resolve_ids(card_back, fallback_for("card_back")),
                    include_text=False,
                    aspect="3:4",
                    label="Card Back",
                    group="Card Back",
                )
            )
        return jobs

    def _derive_legacy(self, content, selection):
        fallback = self.resource_ids(selection)
        jobs = []
        for i, card in enumerate(_dicts(content.get("cards"))):
            jobs.append(
                ImageJob(
                    asset_key=card.get("imageAssetKey") or f"card_{i}",
                    asset_kind="card_image",
                    prompt=card.get("imagePrompt") or f"Card game card: {card.get('title', '')}",
                    character_ids=_resolve_ids(card, fallback),
                    include_text=True,
                    aspect="3:4",
                    label=card.get("title") or f"Card {i + 1}",
                    group="Cards",
                )
            )
        return jobs

    def linkable_items(self, content):
        if self.is_legacy(content):
            for i, card in enumerate(_dicts(content.get("cards"))):
                yield f"card_{i}", card
            return
        for i, bg in enumerate(_dicts(content.get("backgrounds"))):
            yield f"background_{i}", bg
        for i, icon in enumerate(_dicts(content.get("icons"))):
            yield f"icon_{i}", icon
        if isinstance(content.get("cardBack"), dict):
            yield "card_back", content["cardBack"]


@register
class BoardGameStrategy(ResourceStrategy):
    kind = ResourceKind.board_game

    def derive_jobs(self, content, selection):
        fallback = self.resource_ids(selection)
        board_prompt = content.get("boardImagePrompt") or "Board game background illustration"
        jobs = [
            ImageJob(
                asset_key=content.get("boardImageAssetKey") or "board_main",
                asset_kind="board_image",
                prompt=f"Board game illustration: {board_prompt}",
                character_ids=_resolve_ids(content, fallback),
                include_text=True,
                aspect="1:1",
                label="Board",
                group="Board",
            )
        ]
        for i, token in enumerate(_dicts(content.get("tokens"))):
            name = token.get("name") or f"Token {i + 1}"
            prompt = token.get("imagePrompt") or f"Game token piece: {name}"
            if token.get("color") and not token.get("imagePrompt"):
                prompt = f"{prompt}, {token['color']} accents"
            jobs.append(
                ImageJob(
                    asset_key=token.get("assetKey") or f"token_{i}",
                    asset_kind="token_image",
                    prompt=prompt,
                    character_ids=_resolve_ids(token, fallback),
                    include_text=False,
                    aspect="1:1",
                    green_screen=True,
                    label=name,
                    group="Tokens",
                )
            )
        for i, card in enumerate(_dicts(content.get("cards"))):
            title = card.get("title") or f"Card {i + 1}"
            jobs.append(
                ImageJob(
                    asset_key=card.get("assetKey") or f"board_card_{i}",
                    asset_kind="card_image",
                    prompt=card.get("imagePrompt") or f"Board game card illustration: {title}",
                    character_ids=_resolve_ids(card, fallback),
                    include_text=True,
                    aspect="3:4",
                    label=title,
                    group="Cards",
                )
            )
        return jobs

    def linkable_items(self, content):
        yield "board", content
        for i, token in enumerate(_dicts(content.get("tokens"))):
            yield f"token_{i}", token
        for i, card in enumerate(_dicts(content.get("cards"))):
            yield f"card_{i}", card


@register
class BookStrategy(ResourceStrategy):
    kind = ResourceKind.book

    def derive_jobs(self, content, selection):
        fallback = self.resource_ids(selection)
        jobs = []
        cover = content.get("cover")
        if isinstance(cover, dict) and cover.get("imagePrompt"):
            jobs.append(
                ImageJob(
                    asset_key=cover.get("imageAssetKey") or "book_cover",
                    asset_kind="book_cover_image",
                    prompt=f"Book cover illustration: {cover['imagePrompt']}. {BOOK_COVER_SUFFIX}",
                    character_ids=_resolve_ids(cover, fallback),
                    include_text=False,
                    aspect="3:4",
                    label="Cover",
                    group="Cover",
                )
            )
        for i, page in enumerate(_dicts(content.get("pages"))):
            if not page.get("imagePrompt"):
                continue
            jobs.append(
                ImageJob(
                    asset_key=page.get("imageAssetKey") or f"book_page_{i}",
                    asset_kind="book_page_image",
                    prompt=page["imagePrompt"],
                    character_ids=_resolve_ids(page, fallback),
                    include_text=False,
                    aspect="3:4",
                    label=f"Page {i + 1}",
                    group="Pages",
                )
            )
        return jobs

    def linkable_items(self, content):
        if isinstance(content.get("cover"), dict):
            yield "cover", content["cover"]
        for i, page in enumerate(_dicts(content.get("pages"))):
            yield f"page_{i}", page


@register
class WorksheetStrategy(ResourceStrategy):
    kind = ResourceKind.worksheet

    def derive_jobs(self, content, selection):
        fallback = self.resource_ids(selection)
        jobs = []
        header_prompt = content.get("headerImagePrompt") or content.get("imagePrompt")
        if header_prompt:
            jobs.append(
                ImageJob(
                    asset_key=content.get("headerImageAssetKey") or "worksheet_header",
                    asset_kind="worksheet_image",
                    prompt=f"Worksheet header illustration: {header_prompt}",
                    character_ids=_resolve_ids(content, fallback),
                    include_text=False,
                    aspect="4:3",
                    label="Header",
                    group="Header",
                )
            )
        image_number = 0
        for i, block in enumerate(_dicts(content.get("blocks"))):
            if block.get("type") != "image" or not block.get("imagePrompt"):
                continue
            image_number += 1
            jobs.append(
                ImageJob(
                    asset_key=block.get("imageAssetKey") or f"worksheet_block_{i}",
                    asset_kind="worksheet_block_image",
                    prompt=block["imagePrompt"],
                    character_ids=_resolve_ids(block, fallback),
                    include_text=False,
                    aspect="4:3",
                    label=block.get("caption") or f"Image {image_number}",
                    group="Blocks",
                )
            )
        return jobs

    def linkable_items(self, content):
        yield "header", content
        for i, block in enumerate(_dicts(content.get("blocks"))):
            if block.get("type") == "image":
                yield f"block_{i}", block


@register
class FreePromptStrategy(ResourceStrategy):
    kind = ResourceKind.free_prompt

    def derive_jobs(self, content, selection):
        output = content.get("output") if isinstance(content.get("output"), dict) else {}
        aspect = output.get("aspect") if output.get("aspect") in ("1:1", "3:4", "4:3") else "1:1"
        return [
            ImageJob(
                asset_key=content.get("imageAssetKey") or "free_prompt_main",
                asset_kind="free_prompt_image",
                prompt=content.get("prompt") or "",
                character_ids=_resolve_ids(content, self.resource_ids(selection)),
                include_text=False,
                aspect=aspect,
                label="Image",
                group="Image",
            )
        ]

    def linkable_items(self, content):
        yield "image", content


# ==================== Public API ====================


def extract_jobs(
    kind: ResourceKind,
    content: Optional[Content],
    selection: Optional[CharacterSelection] = None,
) -> List[ImageJob]:
    """Derive the full, ordered job list for a piece of content."""
    if not content:
        return []
    return _dedupe_keys(get_strategy(kind).derive_jobs(content, selection))


def merge_job_statuses(new_jobs: List[ImageJob], old_jobs: List[ImageJob]) -> List[ImageJob]:
    """
    Carry status/error over from old jobs whose generation request is unchanged.
    Anything new or structurally changed comes back `pending`.
    """
    old_by_key = {job.asset_key: job for job in old_jobs}
    merged = []
    for job in new_jobs:
        old = old_by_key.get(job.asset_key)
        if old is not None and old.same_work(job) and old.status != JobStatus.pending:
            job = job.model_copy(update={"status": old.status, "error": old.error})
        merged.append(job)
    return merged
