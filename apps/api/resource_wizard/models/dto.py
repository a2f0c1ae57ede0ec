from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ResourceKind(str, Enum):
    poster = "poster"
    flashcards = "flashcards"
    card_game = "card_game"
    board_game = "board_game"
    book = "book"
    worksheet = "worksheet"
    free_prompt = "free_prompt"


class ContentStatus(str, Enum):
    idle = "idle"
    generating = "generating"
    ready = "ready"
    error = "error"


class DetectionStatus(str, Enum):
    idle = "idle"
    creating = "creating"
    ready = "ready"
    skipped = "skipped"


class JobStatus(str, Enum):
    pending = "pending"
    generating = "generating"
    complete = "complete"
    error = "error"


class CharacterMode(str, Enum):
    resource = "resource"
    per_item = "per_item"


class ResumePhase(str, Enum):
    uninitialized = "uninitialized"
    prompting = "prompting"
    resolved = "resolved"


class WizardStep(IntEnum):
    describe = 0
    review = 1
    generate = 2
    export = 3


STEP_LABELS = ["Describe", "Review", "Generate", "Export"]
STEP_TITLES = [
    "Describe Your Resource",
    "Review & Edit",
    "Generate Images",
    "Export",
]
TOTAL_STEPS = len(STEP_LABELS)

Aspect = Literal["1:1", "3:4", "4:3"]


# ==================== Style ====================

class StyleColors(BaseModel):
    primary: str = "#FF6B6B"
    secondary: str = "#4ECDC4"
    accent: str = "#FFE66D"
    background: str = "#FFFFFF"
    text: str = "#1A1A1A"


class StylePreset(BaseModel):
    """A visual style. `id` is the style reference used for reference portraits."""

    id: str = Field(min_length=1, max_length=60)
    name: str = Field(min_length=1, max_length=80)
    colors: StyleColors = Field(default_factory=StyleColors)
    illustration_style: str = Field(default="", max_length=600)


# ==================== Characters ====================

class CharacterSelection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: CharacterMode
    character_ids: List[str] = Field(min_length=1)

    @model_validator(mode="after")
    def _resource_mode_single(self) -> "CharacterSelection":
        if self.mode == CharacterMode.resource and len(self.character_ids) != 1:
            raise ValueError("resource mode takes exactly one character")
        return self

    def to_content(self) -> Dict[str, Any]:
        return {"mode": self.mode.value, "characterIds": list(self.character_ids)}

    @classmethod
    def from_content(cls, raw: Optional[Dict[str, Any]]) -> Optional["CharacterSelection"]:
        if not raw or not raw.get("characterIds"):
            return None
        return cls(mode=raw.get("mode", CharacterMode.per_item), character_ids=raw["characterIds"])


class RawDetectedCharacter(BaseModel):
    """Character as reported inside generated content (`detectedCharacters`)."""

    name: str = ""
    description: str = ""
    personality: str = ""
    visual_description: str = Field(default="", alias="visualDescription")
    appears_on: List[str] = Field(default_factory=list, alias="appearsOn")

    model_config = ConfigDict(populate_by_name=True)


class DetectedCharacter(BaseModel):
    name: str
    character_id: str
    appears_on: List[str] = Field(default_factory=list)
    is_new: bool = True
    prompt_fragment: str = ""
    suggested_prompt_fragment: Optional[str] = None
    suggestion_dismissed: bool = False


# ==================== Jobs ====================

class ImageJob(BaseModel):
    asset_key: str
    asset_kind: str
    prompt: str
    character_ids: Optional[List[str]] = None
    include_text: bool = False
    aspect: Aspect = "1:1"
    green_screen: bool = False
    label: Optional[str] = None
    group: Optional[str] = None
    status: JobStatus = JobStatus.pending
    error: Optional[str] = None

    def same_work(self, other: "ImageJob") -> bool:
        """True when both jobs would send the identical generation request."""
        ignore = {"status", "error"}
        return self.model_dump(exclude=ignore) == other.model_dump(exclude=ignore)


class JobEvent(BaseModel):
    """One job status change, applied against the current state."""

    index: int = Field(ge=0)
    asset_key: str
    status: JobStatus
    error: Optional[str] = None


class BatchReport(BaseModel):
    batches: List[int] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0


# ==================== Wizard State ====================

class WizardState(BaseModel):
    description: str = ""
    name: str = ""
    style: Optional[StylePreset] = None
    character_selection: Optional[CharacterSelection] = None
    generated_content: Optional[Dict[str, Any]] = None
    content_status: ContentStatus = ContentStatus.idle
    content_error: Optional[str] = None
    image_items: List[ImageJob] = Field(default_factory=list)
    resource_id: Optional[str] = None
    resource_kind: ResourceKind
    is_edit_mode: bool = False
    detected_characters: List[DetectedCharacter] = Field(default_factory=list)
    detected_characters_status: DetectionStatus = DetectionStatus.idle
    # navigation
    current_step: WizardStep = WizardStep.describe
    is_navigating: bool = False
    # one-shot phases
    resume_phase: ResumePhase = ResumePhase.uninitialized
    resume_draft_id: Optional[str] = None
    edit_phase: ResumePhase = ResumePhase.uninitialized


# ==================== Persistence Records ====================

class ResourceRecord(BaseModel):
    id: str
    owner_key: str
    kind: ResourceKind
    name: str
    description: str = ""
    style: Optional[StylePreset] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["draft", "complete"] = "draft"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AssetRecord(BaseModel):
    owner_id: str
    asset_kind: str
    asset_key: str
    url: Optional[str] = None
    version: int = 1
    updated_at: Optional[datetime] = None


# ==================== API ====================

class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resource_kind: ResourceKind
    edit_resource_id: Optional[str] = Field(default=None, max_length=60)
    style: Optional[StylePreset] = None


class UpdateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, max_length=2000)
    name: Optional[str] = Field(default=None, max_length=120)
    character_selection: Optional[CharacterSelection] = None
    clear_character_selection: bool = False
    style: Optional[StylePreset] = None
    content: Optional[Dict[str, Any]] = None


class GoToStepRequest(BaseModel):
    step: WizardStep


class UpdatePromptRequest(BaseModel):
    prompt_fragment: str = Field(min_length=1, max_length=1200)


class StepInfo(BaseModel):
    index: int
    label: str
    title: str
    complete: bool


class SessionResponse(BaseModel):
    session_id: str
    state: WizardState
    steps: List[StepInfo]
    can_go_next: bool
    resume_prompt_open: bool
    is_running: bool = False


class DraftSummary(BaseModel):
    resource_id: str
    name: str
    kind: ResourceKind
    updated_at: Optional[datetime] = None


class DraftListResponse(BaseModel):
    drafts: List[DraftSummary]
    total: int
