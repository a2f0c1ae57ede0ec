import pytest
import pytest_asyncio
import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Test environment
os.environ["TESTING"] = "true"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["LLM_PROVIDER"] = "mock"
os.environ["IMAGE_PROVIDER"] = "mock"

from resource_wizard.main import app
from resource_wizard.core.database import async_engine, get_db
from resource_wizard.core.errors import DraftSaveError
from resource_wizard.models.db import Base
from resource_wizard.models.dto import (
    AssetRecord,
    DetectedCharacter,
    ResourceKind,
    ResourceRecord,
    StylePreset,
)
from resource_wizard.services.batch_runner import BatchRunner
from resource_wizard.services.sessions import sessions
from resource_wizard.services.wizard import WizardController


# Test DB engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    # pooled connections belong to this test's event loop
    await test_engine.dispose()
    await async_engine.dispose()


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    sessions.clear()


@pytest.fixture
def user_key():
    """Test user key."""
    return "test-user-key-12345678901234567890"


@pytest.fixture
def headers(user_key):
    """Default headers with user key."""
    return {"X-User-Key": user_key}


@pytest.fixture
def style():
    return StylePreset(id="watercolor", name="Watercolor", illustration_style="soft watercolor")


# ==================== Collaborator Fakes ====================


class FakeContentGenerator:
    def __init__(self, content: Optional[dict] = None, error: Optional[Exception] = None):
        self.content = content or {}
        self.error = error
        self.calls: List[dict] = []

    async def generate(self, kind, description, style=None, character_ids=None, character_mode=None):
        self.calls.append(
            {
                "kind": kind,
                "description": description,
                "character_ids": character_ids,
                "character_mode": character_mode,
            }
        )
        if self.error:
            raise self.error
        # callers pop detectedCharacters; hand out a copy
        return {k: (list(v) if isinstance(v, list) else v) for k, v in self.content.items()}


class FakeCharacterCreator:
    def __init__(self, results: Optional[List[DetectedCharacter]] = None, error: Optional[Exception] = None):
        self.results = results or []
        self.error = error
        self.calls = []

    async def create_detected(self, owner_id, style, characters):
        self.calls.append((owner_id, characters))
        if self.error:
            raise self.error
        return list(self.results)


class FakeCharacterStore:
    def __init__(self):
        self.updates: List[tuple] = []

    async def update_prompt_fragment(self, character_id, prompt_fragment):
        self.updates.append((character_id, prompt_fragment))


class FakeReferenceEnsurer:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.calls: List[tuple] = []

    async def ensure_reference(self, character_id, style, force=False):
        self.calls.append((character_id, style.id))
        if character_id in self.fail_ids:
            raise RuntimeError(f"portrait failed for {character_id}")
        return f"https://example.com/portraits/{character_id}.png"


class FakeImageGenerator:
    """Records calls and peak concurrency; fails the asset keys it is told to"""

    def __init__(self, fail_keys=(), gate: Optional[asyncio.Event] = None, on_call=None):
        self.fail_keys = set(fail_keys)
        self.gate = gate
        self.on_call = on_call
        self.calls: List[str] = []
        self.green_screen_calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def _run(self, asset_key):
        if self.on_call is not None:
            self.on_call(asset_key)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            if asset_key in self.fail_keys:
                raise RuntimeError(f"provider rejected {asset_key}")
            return f"https://example.com/{asset_key}.png"
        finally:
            self.active -= 1

    async def generate(self, owner_id, asset_kind, asset_key, prompt, style=None,
                       character_ids=None, include_text=False, aspect="1:1"):
        self.calls.append(asset_key)
        return await self._run(asset_key)

    async def generate_green_screen(self, owner_id, asset_kind, asset_key, prompt, style=None,
                                    character_ids=None, include_text=False, aspect="1:1"):
        self.calls.append(asset_key)
        self.green_screen_calls.append(asset_key)
        return await self._run(asset_key)


class FakeDraftStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: Dict[str, ResourceRecord] = {}
        self.created: List[str] = []
        self.updated: List[dict] = []

    def add(self, record: ResourceRecord):
        self.records[record.id] = record
        return record

    async def create_draft(self, owner_key, kind, name, description, style, content):
        if self.fail:
            raise DraftSaveError("database unavailable")
        resource_id = f"res_{len(self.records) + 1}"
        self.add(
            ResourceRecord(
                id=resource_id,
                owner_key=owner_key,
                kind=kind,
                name=name,
                description=description,
                style=style,
                content=content,
                updated_at=datetime.utcnow(),
            )
        )
        self.created.append(resource_id)
        return resource_id

    async def update_draft(self, resource_id, name=None, content=None, style=None):
        if self.fail:
            raise DraftSaveError("database unavailable")
        self.updated.append({"resource_id": resource_id, "name": name, "content": content, "style": style})
        record = self.records.get(resource_id)
        if record is not None:
            changes = {"updated_at": datetime.utcnow()}
            if name is not None:
                changes["name"] = name
            if content is not None:
                changes["content"] = content
            if style is not None:
                changes["style"] = style
            self.records[resource_id] = record.model_copy(update=changes)

    async def get_resource(self, resource_id):
        return self.records.get(resource_id)

    async def list_drafts(self, owner_key, kind):
        return [
            r for r in self.records.values()
            if r.owner_key == owner_key and r.kind == kind and r.status == "draft"
        ]


class FakeAssetLookup:
    def __init__(self, assets: Optional[List[AssetRecord]] = None):
        self.assets = assets or []

    async def list_assets(self, owner_id):
        return [a for a in self.assets if a.owner_id == owner_id]


@pytest.fixture
def draft_record():
    """Factory for stored resources"""

    def make(resource_id="res_old", kind=ResourceKind.flashcards, owner_key="owner-key-1234567890",
             content=None, age_minutes=10, **extra):
        return ResourceRecord(
            id=resource_id,
            owner_key=owner_key,
            kind=kind,
            name=extra.pop("name", "Old Deck"),
            description=extra.pop("description", "an old deck"),
            content=content if content is not None else {"cards": [{"frontText": "Hi"}]},
            updated_at=datetime.utcnow() - timedelta(minutes=age_minutes),
            **extra,
        )

    return make


@pytest.fixture
def make_controller():
    """
    Controller over in-memory fakes. Every fake can be overridden by keyword;
    the fakes used are reachable as attributes of the returned controller.
    """

    def make(kind=ResourceKind.flashcards, owner_key="owner-key-1234567890", **overrides):
        content_generator = overrides.pop("content_generator", FakeContentGenerator())
        draft_store = overrides.pop("draft_store", FakeDraftStore())
        character_creator = overrides.pop("character_creator", FakeCharacterCreator())
        character_store = overrides.pop("character_store", FakeCharacterStore())
        reference_ensurer = overrides.pop("reference_ensurer", FakeReferenceEnsurer())
        asset_lookup = overrides.pop("asset_lookup", FakeAssetLookup())
        image_generator = overrides.pop("image_generator", FakeImageGenerator())
        runner = overrides.pop(
            "runner", BatchRunner(image_generator, reference_ensurer=reference_ensurer, batch_size=3)
        )
        return WizardController(
            kind=kind,
            owner_key=owner_key,
            content_generator=content_generator,
            draft_store=draft_store,
            character_creator=character_creator,
            character_store=character_store,
            reference_ensurer=reference_ensurer,
            asset_lookup=asset_lookup,
            runner=runner,
            **overrides,
        )

    return make


@pytest.fixture
def flashcard_content():
    def make(count=7):
        return {
            "name": "Feelings",
            "cards": [
                {"frontText": f"Feeling {i}", "backText": "...", "imagePrompt": f"card {i} art"}
                for i in range(count)
            ],
        }

    return make
