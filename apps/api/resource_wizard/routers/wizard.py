from fastapi import APIRouter, BackgroundTasks, Depends
import structlog

from resource_wizard.core.dependencies import get_user_key
from resource_wizard.core.errors import BatchInProgressError, WizardError
from resource_wizard.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from resource_wizard.models.dto import (
    CreateSessionRequest,
    GoToStepRequest,
    SessionResponse,
    UpdatePromptRequest,
    UpdateSessionRequest,
)
from resource_wizard.services.sessions import WizardSession, sessions

logger = structlog.get_logger()

router = APIRouter()

IMAGE_RUNS = ("generate_remaining", "retry_failed", "regenerate_all")


def get_session(session_id: str, user_key: str = Depends(get_user_key)) -> WizardSession:
    session = sessions.get(session_id)
    if session is None:
        raise NotFoundError("Wizard session", session_id)
    if session.owner_key != user_key:
        raise AuthorizationError()
    return session


def session_response(session: WizardSession) -> SessionResponse:
    controller = session.controller
    return SessionResponse(
        session_id=session.id,
        state=controller.state,
        steps=controller.steps(),
        can_go_next=controller.can_go_next(),
        resume_prompt_open=session.drafts.prompt_open,
        is_running=controller.is_running,
    )


async def run_images(session: WizardSession, run: str):
    """Background image run. Per-job failures already live in the job list."""
    try:
        report = await getattr(session.controller, run)()
        logger.info(
            "Image run complete",
            session_id=session.id,
            run=run,
            completed=report.completed,
            failed=report.failed,
        )
    except WizardError as e:
        logger.warning("Image run rejected", session_id=session.id, run=run, error=str(e))
    except Exception:
        logger.exception("Unexpected error in image run", session_id=session.id, run=run)


@router.post("", response_model=SessionResponse)
async def create_session(
    request: CreateSessionRequest,
    user_key: str = Depends(get_user_key),
):
    """
    Open a wizard for a resource kind

    - With `edit_resource_id` the wizard opens that resource in edit mode
    - Otherwise the owner's latest draft of this kind may be offered for resume
    """
    session = sessions.create(request.resource_kind, user_key, style=request.style)
    controller = session.controller

    if request.edit_resource_id:
        record = await controller.draft_store.get_resource(request.edit_resource_id)
        if record is None:
            sessions.discard(session.id)
            raise NotFoundError("Resource", request.edit_resource_id)
        if record.owner_key != user_key:
            sessions.discard(session.id)
            raise AuthorizationError()
        if record.kind != request.resource_kind:
            sessions.discard(session.id)
            raise ValidationError(
                "Resource kind does not match the wizard",
                details={"resource_kind": record.kind.value},
            )
        await controller.open_existing(record.id)
    else:
        await session.drafts.check()

    return session_response(session)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_wizard(session: WizardSession = Depends(get_session)):
    await session.drafts.check()
    return session_response(session)


@router.patch("/{session_id}", response_model=SessionResponse)
async def update_wizard(
    request: UpdateSessionRequest,
    session: WizardSession = Depends(get_session),
):
    controller = session.controller
    if request.description is not None:
        controller.set_description(request.description)
    if request.name is not None:
        controller.set_name(request.name)
    if request.clear_character_selection:
        controller.set_character_selection(None)
    elif request.character_selection is not None:
        controller.set_character_selection(request.character_selection)
    if request.content is not None:
        if controller.state.generated_content is None:
            raise ConflictError("No generated content to edit yet")
        controller.edit_content(request.content)
    if request.style is not None:
        await controller.change_style(request.style)
    return session_response(session)


# ==================== Navigation ====================


@router.post("/{session_id}/next", response_model=SessionResponse)
async def next_step(session: WizardSession = Depends(get_session)):
    """Advance one step (generates content when leaving Describe, saves drafts after Review)"""
    await session.controller.next()
    return session_response(session)


@router.post("/{session_id}/back", response_model=SessionResponse)
async def previous_step(session: WizardSession = Depends(get_session)):
    session.controller.back()
    return session_response(session)


@router.post("/{session_id}/goto", response_model=SessionResponse)
async def go_to_step(
    request: GoToStepRequest,
    session: WizardSession = Depends(get_session),
):
    await session.controller.go_to(request.step)
    return session_response(session)


@router.get("/{session_id}/cancel")
async def cancel_target(session: WizardSession = Depends(get_session)):
    """Where the client should go when the wizard is cancelled"""
    target = session.controller.cancel_target()
    sessions.discard(session.id)
    return target


# ==================== Content ====================


@router.post("/{session_id}/generate-content", response_model=SessionResponse)
async def generate_content(session: WizardSession = Depends(get_session)):
    if not session.controller.state.description.strip():
        raise ValidationError("Description is required")
    await session.controller.generate_content()
    return session_response(session)


@router.post("/{session_id}/save", response_model=SessionResponse)
async def save_draft(session: WizardSession = Depends(get_session)):
    if not session.controller.state.name.strip():
        raise ValidationError("Name is required to save a draft")
    await session.controller.save_draft()
    return session_response(session)


# ==================== Images ====================


@router.post("/{session_id}/images/{run}", response_model=SessionResponse, status_code=202)
async def start_image_run(
    run: str,
    background_tasks: BackgroundTasks,
    session: WizardSession = Depends(get_session),
):
    """
    Start an image run in the background

    - generate-remaining: every pending job
    - retry-failed: every failed job
    - regenerate-all: reset every job to pending, then run all
    """
    run_name = run.replace("-", "_")
    if run_name not in IMAGE_RUNS:
        raise NotFoundError("Image run", run)
    controller = session.controller
    if not controller.state.resource_id:
        raise ConflictError("Save a draft before generating images")
    if controller.is_running:
        raise BatchInProgressError()

    background_tasks.add_task(run_images, session, run_name)
    return session_response(session)


# ==================== Draft Resume ====================


@router.post("/{session_id}/resume", response_model=SessionResponse)
async def resume_draft(session: WizardSession = Depends(get_session)):
    if not session.drafts.prompt_open:
        raise ConflictError("No draft resume is on offer")
    await session.drafts.resume()
    return session_response(session)


@router.post("/{session_id}/start-fresh", response_model=SessionResponse)
async def start_fresh(session: WizardSession = Depends(get_session)):
    session.drafts.start_fresh()
    return session_response(session)


# ==================== Detected Characters ====================


@router.put("/{session_id}/characters/{character_id}/prompt", response_model=SessionResponse)
async def update_character_prompt(
    character_id: str,
    request: UpdatePromptRequest,
    session: WizardSession = Depends(get_session),
):
    if not await session.controller.update_character_prompt(character_id, request.prompt_fragment):
        raise NotFoundError("Detected character", character_id)
    return session_response(session)


@router.delete("/{session_id}/characters/{character_id}", response_model=SessionResponse)
async def remove_detected_character(
    character_id: str,
    session: WizardSession = Depends(get_session),
):
    if not session.controller.remove_detected_character(character_id):
        raise NotFoundError("Detected character", character_id)
    return session_response(session)


@router.post(
    "/{session_id}/characters/{character_id}/suggestion/accept",
    response_model=SessionResponse,
)
async def accept_suggestion(
    character_id: str,
    session: WizardSession = Depends(get_session),
):
    if not await session.controller.accept_suggestion(character_id):
        raise ConflictError("No pending suggestion for this character")
    return session_response(session)


@router.post(
    "/{session_id}/characters/{character_id}/suggestion/dismiss",
    response_model=SessionResponse,
)
async def dismiss_suggestion(
    character_id: str,
    session: WizardSession = Depends(get_session),
):
    if not session.controller.dismiss_suggestion(character_id):
        raise NotFoundError("Detected character", character_id)
    return session_response(session)
