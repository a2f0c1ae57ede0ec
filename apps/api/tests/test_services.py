"""
Service Layer Tests
"""

import pytest
from unittest.mock import AsyncMock, patch

from resource_wizard.core.errors import (
    CharacterDetectionError,
    ContentGenerationError,
    DraftSaveError,
    ErrorCode,
    ImageError,
    LLMError,
)
from resource_wizard.models.db import AssetVersion, Character, StyledPortrait
from resource_wizard.models.dto import RawDetectedCharacter, ResourceKind, StylePreset


@pytest.fixture
def resource_store(db_session, session_factory):
    from resource_wizard.services.storage import ResourceStore

    return ResourceStore(session_factory)


@pytest.fixture
def character_service(db_session, session_factory):
    from resource_wizard.services.characters import CharacterService

    return CharacterService(session_factory)


async def add_character(session_factory, **fields):
    async with session_factory() as session:
        character = Character(**fields)
        session.add(character)
        await session.commit()
        return character


class TestResourceStore:
    """Draft and asset persistence tests."""

    @pytest.mark.asyncio
    async def test_create_and_get_draft(self, resource_store, style):
        resource_id = await resource_store.create_draft(
            owner_key="owner-key-1234567890",
            kind=ResourceKind.flashcards,
            name="Feelings",
            description="feelings cards",
            style=style,
            content={"cards": [{"frontText": "Happy"}]},
        )

        assert resource_id.startswith("res_")
        record = await resource_store.get_resource(resource_id)
        assert record.kind == ResourceKind.flashcards
        assert record.status == "draft"
        assert record.style.id == "watercolor"
        assert record.content == {"cards": [{"frontText": "Happy"}]}

    @pytest.mark.asyncio
    async def test_get_missing_resource(self, resource_store):
        assert await resource_store.get_resource("res_missing") is None

    @pytest.mark.asyncio
    async def test_update_draft(self, resource_store):
        resource_id = await resource_store.create_draft(
            "owner-key-1234567890", ResourceKind.poster, "Calm", "calm poster", None, {}
        )

        await resource_store.update_draft(
            resource_id, name="Calm Corner", content={"headline": "Breathe"},
            style=StylePreset(id="crayon", name="Crayon"),
        )

        record = await resource_store.get_resource(resource_id)
        assert record.name == "Calm Corner"
        assert record.content == {"headline": "Breathe"}
        assert record.style.id == "crayon"

    @pytest.mark.asyncio
    async def test_update_missing_draft_raises(self, resource_store):
        with pytest.raises(DraftSaveError):
            await resource_store.update_draft("res_missing", name="x")

    @pytest.mark.asyncio
    async def test_list_drafts_most_recent_first(self, resource_store):
        owner = "owner-key-1234567890"
        first = await resource_store.create_draft(owner, ResourceKind.book, "A", "a", None, {})
        second = await resource_store.create_draft(owner, ResourceKind.book, "B", "b", None, {})
        await resource_store.create_draft(owner, ResourceKind.poster, "C", "c", None, {})
        await resource_store.create_draft("other-owner-1234567890", ResourceKind.book, "D", "d", None, {})
        await resource_store.update_draft(first, name="A2")

        drafts = await resource_store.list_drafts(owner, ResourceKind.book)

        assert [d.id for d in drafts] == [first, second]

    @pytest.mark.asyncio
    async def test_asset_versions(self, resource_store, db_session):
        owner_id = await resource_store.create_draft(
            "owner-key-1234567890", ResourceKind.flashcards, "Deck", "deck", None, {}
        )

        v1 = await resource_store.record_asset_version(
            owner_id, "flashcard_front_image", "flashcard_front_0", "https://x/1.png", prompt="p1"
        )
        v2 = await resource_store.record_asset_version(
            owner_id, "flashcard_front_image", "flashcard_front_0", "https://x/2.png", prompt="p2"
        )
        await resource_store.record_asset_version(
            owner_id, "flashcard_front_image", "flashcard_front_1", "https://x/3.png"
        )

        assert (v1, v2) == (1, 2)
        assets = {a.asset_key: a for a in await resource_store.list_assets(owner_id)}
        assert assets["flashcard_front_0"].url == "https://x/2.png"
        assert assets["flashcard_front_0"].version == 2
        assert assets["flashcard_front_1"].version == 1
        assert await resource_store.list_assets("res_other") == []


class TestCharacterService:
    """Detected character matching, prompts and styled portraits."""

    @pytest.mark.asyncio
    async def test_creates_new_characters(self, character_service, style):
        results = await character_service.create_detected(
            "owner-key-1234567890",
            style,
            [
                RawDetectedCharacter(
                    name="Bramble", visualDescription="round hedgehog", appearsOn=["card_0"]
                ),
                RawDetectedCharacter(name="  "),
            ],
        )

        assert len(results) == 1
        bramble = results[0]
        assert bramble.is_new is True
        assert bramble.character_id.startswith("char_")
        assert bramble.prompt_fragment == "round hedgehog"
        assert bramble.appears_on == ["card_0"]
        assert bramble.suggested_prompt_fragment is None

    @pytest.mark.asyncio
    async def test_matches_existing_by_name(self, character_service, session_factory, style):
        owner = "owner-key-1234567890"
        await add_character(
            session_factory, id="char_1", owner_key=owner, name="Bramble", prompt_fragment="spiky hedgehog"
        )
        await add_character(session_factory, id="char_2", owner_key=owner, name="Pip", prompt_fragment="")

        results = await character_service.create_detected(
            owner,
            style,
            [
                RawDetectedCharacter(name=" bramble ", visualDescription="round hedgehog"),
                RawDetectedCharacter(name="PIP", visualDescription="tiny grey mouse"),
            ],
        )

        bramble, pip = results
        assert bramble.character_id == "char_1"
        assert bramble.is_new is False
        assert bramble.prompt_fragment == "spiky hedgehog"
        assert bramble.suggested_prompt_fragment == "round hedgehog"

        assert pip.character_id == "char_2"
        assert pip.prompt_fragment == "tiny grey mouse"
        assert pip.suggested_prompt_fragment is None
        async with session_factory() as session:
            stored = await session.get(Character, "char_2")
            assert stored.prompt_fragment == "tiny grey mouse"

    @pytest.mark.asyncio
    async def test_other_owners_not_matched(self, character_service, session_factory, style):
        await add_character(session_factory, id="char_1", owner_key="other-owner-123456", name="Bramble")

        results = await character_service.create_detected(
            "owner-key-1234567890", style, [RawDetectedCharacter(name="Bramble")]
        )

        assert results[0].is_new is True
        assert results[0].character_id != "char_1"

    @pytest.mark.asyncio
    async def test_update_prompt_fragment(self, character_service, session_factory):
        await add_character(session_factory, id="char_1", owner_key="owner-key-1234567890", name="Bramble")

        await character_service.update_prompt_fragment("char_1", "hedgehog in red boots")

        async with session_factory() as session:
            assert (await session.get(Character, "char_1")).prompt_fragment == "hedgehog in red boots"
        with pytest.raises(CharacterDetectionError):
            await character_service.update_prompt_fragment("char_missing", "x")

    @pytest.mark.asyncio
    async def test_reference_portrait_cached_per_style(self, character_service, session_factory, style):
        await add_character(
            session_factory, id="char_1", owner_key="owner-key-1234567890", name="Bramble",
            prompt_fragment="round hedgehog",
        )

        with patch(
            "resource_wizard.services.characters.generate_image",
            new=AsyncMock(side_effect=["https://x/p1.png", "https://x/p2.png", "https://x/p3.png"]),
        ) as mock_generate:
            first = await character_service.ensure_reference("char_1", style)
            cached = await character_service.ensure_reference("char_1", style)
            other_style = await character_service.ensure_reference(
                "char_1", StylePreset(id="crayon", name="Crayon")
            )
            forced = await character_service.ensure_reference("char_1", style, force=True)

        assert first == cached == "https://x/p1.png"
        assert other_style == "https://x/p2.png"
        assert forced == "https://x/p3.png"
        assert mock_generate.await_count == 3
        prompt = mock_generate.await_args_list[0].args[0]
        assert "round hedgehog" in prompt
        assert "soft watercolor" in prompt

    @pytest.mark.asyncio
    async def test_reference_portrait_failure_returns_none(self, character_service, session_factory, style):
        await add_character(session_factory, id="char_1", owner_key="owner-key-1234567890", name="Bramble")

        with patch(
            "resource_wizard.services.characters.generate_image",
            new=AsyncMock(side_effect=ImageError(ErrorCode.IMAGE_FAILED, "boom")),
        ):
            assert await character_service.ensure_reference("char_1", style) is None
        assert await character_service.ensure_reference("char_missing", style) is None


class TestImageService:
    """Image generation with retries and asset versions."""

    @pytest.mark.asyncio
    async def test_generate_records_version(self, resource_store, session_factory, style):
        from resource_wizard.services.image import GREEN_SCREEN_INSTRUCTION, ImageService

        owner_id = await resource_store.create_draft(
            "owner-key-1234567890", ResourceKind.card_game, "Deck", "deck", None, {}
        )
        await add_character(
            session_factory, id="char_1", owner_key="owner-key-1234567890", name="Bramble",
            prompt_fragment="round hedgehog",
        )
        service = ImageService(resource_store, session_factory)

        with patch(
            "resource_wizard.services.image.generate_image",
            new=AsyncMock(return_value="https://x/icon.png"),
        ) as mock_generate:
            url = await service.generate_green_screen(
                owner_id, "card_icon", "card_icon:hug", "hugging", style=style, character_ids=["char_1"]
            )

        assert url == "https://x/icon.png"
        prompt = mock_generate.await_args.args[0]
        assert "Bramble: round hedgehog" in prompt
        assert GREEN_SCREEN_INSTRUCTION in prompt

        assets = await resource_store.list_assets(owner_id)
        assert [(a.asset_key, a.url, a.version) for a in assets] == [
            ("card_icon:hug", "https://x/icon.png", 1)
        ]
        async with session_factory() as session:
            from sqlalchemy import select

            version = (await session.execute(select(AssetVersion))).scalar_one()
            assert version.params["green_screen"] is True
            assert version.params["style_id"] == "watercolor"

    @pytest.mark.asyncio
    async def test_styled_portraits_passed_as_references(self, resource_store, session_factory, style):
        from resource_wizard.services.image import ImageService

        owner_id = await resource_store.create_draft(
            "owner-key-1234567890", ResourceKind.book, "Book", "book", None, {}
        )
        for cid, name in (("char_1", "Bramble"), ("char_2", "Pip")):
            await add_character(
                session_factory, id=cid, owner_key="owner-key-1234567890", name=name,
                prompt_fragment=f"{name} look",
            )
        async with session_factory() as session:
            session.add_all(
                [
                    StyledPortrait(character_id="char_2", style_id="watercolor", image_url="https://x/pip.png"),
                    StyledPortrait(character_id="char_1", style_id="watercolor", image_url="https://x/bramble.png"),
                    StyledPortrait(character_id="char_1", style_id="crayon", image_url="https://x/crayon.png"),
                ]
            )
            await session.commit()
        service = ImageService(resource_store, session_factory)

        with patch(
            "resource_wizard.services.image.generate_image",
            new=AsyncMock(return_value="https://x/page.png"),
        ) as mock_generate:
            await service.generate(
                owner_id, "book_page_image", "page_0", "in the woods",
                style=style, character_ids=["char_1", "char_2"],
            )
            assert mock_generate.await_args.args[3] == ["https://x/bramble.png", "https://x/pip.png"]

            await service.generate(owner_id, "book_page_image", "page_1", "at home", character_ids=["char_1"])
            assert mock_generate.await_args.args[3] == []

    @pytest.mark.asyncio
    async def test_retries_retryable_errors(self, resource_store, session_factory):
        from resource_wizard.services.image import ImageService

        owner_id = await resource_store.create_draft(
            "owner-key-1234567890", ResourceKind.poster, "Poster", "p", None, {}
        )
        service = ImageService(resource_store, session_factory)

        with patch(
            "resource_wizard.services.image.generate_image",
            new=AsyncMock(
                side_effect=[ImageError(ErrorCode.IMAGE_RATE_LIMIT, "slow down"), "https://x/poster.png"]
            ),
        ) as mock_generate, patch("resource_wizard.services.image.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            url = await service.generate(owner_id, "poster_image", "poster_main", "calm lake")

        assert url == "https://x/poster.png"
        assert mock_generate.await_count == 2
        mock_sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, resource_store, session_factory):
        from resource_wizard.services.image import ImageService

        service = ImageService(resource_store, session_factory)

        with patch(
            "resource_wizard.services.image.generate_image",
            new=AsyncMock(side_effect=ImageError(ErrorCode.IMAGE_FAILED, "provider down")),
        ) as mock_generate, patch("resource_wizard.services.image.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ImageError):
                await service.generate("res_1", "poster_image", "poster_main", "calm lake")

        assert mock_generate.await_count == 3

    def test_build_image_prompt(self, style):
        from resource_wizard.services.image import (
            NO_TEXT_INSTRUCTION,
            TEXT_INSTRUCTION,
            build_image_prompt,
        )

        with_text = build_image_prompt("A poster", style, include_text=True)
        assert TEXT_INSTRUCTION in with_text
        assert "Illustration style: soft watercolor" in with_text

        plain = build_image_prompt("A page", None, ["Bramble: hedgehog"])
        assert "Featuring: Bramble: hedgehog" in plain
        assert NO_TEXT_INSTRUCTION in plain


class TestContentGeneration:
    """LLM-backed content generation (mock provider)."""

    @pytest.mark.asyncio
    async def test_mock_flashcards_with_detection(self):
        from resource_wizard.services.llm import LLMContentGenerator

        content = await LLMContentGenerator().generate(ResourceKind.flashcards, "feelings cards")

        assert len(content["cards"]) == 4
        assert content["detectedCharacters"][0]["name"] == "Bramble"

    @pytest.mark.asyncio
    async def test_mock_board_game(self):
        from resource_wizard.services.llm import LLMContentGenerator

        content = await LLMContentGenerator().generate(ResourceKind.board_game, "forest game")

        assert "detectedCharacters" not in content
        assert len(content["tokens"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        from resource_wizard.services.llm import LLMContentGenerator

        with pytest.raises(ContentGenerationError) as exc_info:
            await LLMContentGenerator().generate("spreadsheet", "x")
        assert exc_info.value.code == ErrorCode.CONTENT_UNSUPPORTED

    def test_prompt_asks_for_detection_without_characters(self):
        from resource_wizard.services.llm import render_prompt

        prompt = render_prompt(
            "generate_content.system.jinja2",
            kind="book",
            appears_on_keys="cover, page_0",
            detect_characters=True,
        )
        assert "Resource type: book" in prompt
        assert "detectedCharacters" in prompt

    def test_parse_json_response(self):
        from resource_wizard.services.llm import parse_json_response

        assert parse_json_response('```json\n{"name": "Deck"}\n```') == {"name": "Deck"}
        with pytest.raises(LLMError):
            parse_json_response("not json")
        with pytest.raises(LLMError):
            parse_json_response("[1, 2]")
