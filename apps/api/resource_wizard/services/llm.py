"""
LLM Service: structured resource content (posters, decks, books, worksheets, ...)
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import structlog
from jinja2 import Environment, FileSystemLoader

from resource_wizard.core.config import settings
from resource_wizard.core.errors import ContentGenerationError, ErrorCode, LLMError
from resource_wizard.models.dto import CharacterMode, ResourceKind, StylePreset

logger = structlog.get_logger()

# Jinja2 environment for prompt templates
PROMPTS_DIR = Path(__file__).parent.parent / "prompts"
jinja_env = Environment(loader=FileSystemLoader(PROMPTS_DIR), trim_blocks=True, lstrip_blocks=True)

# Positional keys the model may put in detectedCharacters[].appearsOn, per kind
APPEARS_ON_KEYS = {
    ResourceKind.poster: "poster",
    ResourceKind.flashcards: "card_0, card_1, ...",
    ResourceKind.card_game: "background_0, icon_0, card_back (legacy decks: card_0, card_1, ...)",
    ResourceKind.board_game: "board, token_0, card_0, ...",
    ResourceKind.book: "cover, page_0, page_1, ...",
    ResourceKind.worksheet: "header, block_0, block_1, ...",
    ResourceKind.free_prompt: "image",
}

KIND_MARKER = re.compile(r"Resource type: (\w+)")


def render_prompt(template_name: str, **kwargs) -> str:
    """Render a prompt template with given variables"""
    template = jinja_env.get_template(template_name)
    return template.render(**kwargs)


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    max_tokens: int = 4000,
    temperature: float = 0.7,
) -> str:
    """
    Call LLM API and return response text

    Supports: OpenAI, Anthropic, Mock
    """
    if settings.llm_provider == "openai":
        return await _call_openai(system_prompt, user_prompt, max_tokens, temperature)
    elif settings.llm_provider == "anthropic":
        return await _call_anthropic(system_prompt, user_prompt, max_tokens, temperature)
    elif settings.llm_provider == "mock":
        return await _call_mock(system_prompt, user_prompt, max_tokens, temperature)
    else:
        raise ValueError(f"Unknown LLM provider: {settings.llm_provider}")


async def _call_openai(
    system_prompt: str,
    user_prompt: str,
    max_tokens: int,
    temperature: float,
) -> str:
    """Call OpenAI API"""
    if not settings.llm_api_key:
        raise LLMError(
            ErrorCode.LLM_TIMEOUT,
            "OpenAI API key is not configured. Set the LLM_API_KEY environment variable.",
        )

    try:
        async with httpx.AsyncClient(timeout=settings.llm_timeout) as client:
            response = await client.post(
                "https://api.openai.com/v1/chat/completions",
                headers={
                    "Authorization": f"Bearer {settings.llm_api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": settings.llm_model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "response_format": {"type": "json_object"},
                },
            )
    except httpx.TimeoutException:
        raise LLMError(ErrorCode.LLM_TIMEOUT, "OpenAI request timed out")

    if response.status_code != 200:
        logger.error("OpenAI API error", status=response.status_code, body=response.text)
        raise LLMError(ErrorCode.LLM_TIMEOUT, f"OpenAI API error: {response.status_code}")

    data = response.json()
    return data["choices"][0]["message"]["content"]


async def _call_anthropic(
    system_prompt: str,
    user_prompt: str,
    max_tokens: int,
    temperature: float,
) -> str:
    """Call Anthropic API"""
    if not settings.llm_api_key:
        raise LLMError(
            ErrorCode.LLM_TIMEOUT,
            "Anthropic API key is not configured. Set the LLM_API_KEY environment variable.",
        )

    try:
        async with httpx.AsyncClient(timeout=settings.llm_timeout) as client:
            response = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": settings.llm_api_key,
                    "anthropic-version": "2023-06-01",
                    "Content-Type": "application/json",
                },
                json={
                    "model": settings.llm_model,
                    "system": system_prompt,
                    "messages": [
                        {"role": "user", "content": user_prompt},
                    ],
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
    except httpx.TimeoutException:
        raise LLMError(ErrorCode.LLM_TIMEOUT, "Anthropic request timed out")

    if response.status_code != 200:
        logger.error("Anthropic API error", status=response.status_code, body=response.text)
        raise LLMError(ErrorCode.LLM_TIMEOUT, f"Anthropic API error: {response.status_code}")

    data = response.json()
    return data["content"][0]["text"]


async def _call_mock(
    system_prompt: str,
    user_prompt: str,
    max_tokens: int,
    temperature: float,
) -> str:
    """Mock LLM for testing"""
    await asyncio.sleep(0.01)  # Simulate API latency

    match = KIND_MARKER.search(system_prompt)
    kind = ResourceKind(match.group(1)) if match else None
    if kind is None:
        return json.dumps({"result": "mock response"})
    return json.dumps(_mock_content(kind))


def _mock_content(kind: ResourceKind) -> Dict[str, Any]:
    buddy = {
        "name": "Bramble",
        "description": "A gentle hedgehog who helps kids name their feelings",
        "personality": "patient, curious",
        "visualDescription": "small round hedgehog with soft brown spines and a green scarf",
    }
    if kind == ResourceKind.poster:
        return {
            "name": "Calm Down Corner",
            "headline": "Take a deep breath",
            "subtext": "In for 4, hold for 4, out for 4",
            "imagePrompt": "A cozy reading nook with pillows and the words 'Take a deep breath'",
        }
    if kind == ResourceKind.flashcards:
        return {
            "name": "Feelings Flashcards",
            "cards": [
                {
                    "frontText": feeling,
                    "backText": f"What does {feeling.lower()} feel like in your body?",
                    "imagePrompt": f"A friendly hedgehog looking {feeling.lower()}",
                }
                for feeling in ["Happy", "Sad", "Angry", "Scared"]
            ],
            "detectedCharacters": [
                {**buddy, "appearsOn": ["card_0", "card_1", "card_2", "card_3"]},
            ],
        }
    if kind == ResourceKind.card_game:
        return {
            "name": "Feelings Match",
            "deckName": "Feelings Deck",
            "rules": "Take turns drawing cards. Match a feeling to a coping skill.",
            "backgrounds": [
                {"id": "warm", "label": "Warm", "imagePrompt": "Warm sunset gradient card frame"},
                {"id": "cool", "label": "Cool", "imagePrompt": "Cool ocean gradient card frame"},
            ],
            "icons": [
                {"id": "breathe", "label": "Breathe", "imagePrompt": "Hedgehog breathing slowly"},
                {"id": "hug", "label": "Hug", "imagePrompt": "Hedgehog hugging a pillow"},
            ],
            "cardBack": {"imagePrompt": "Repeating pattern of small leaves"},
            "cards": [
                {"title": "Breathe", "text": "Take three slow breaths", "count": 4},
                {"title": "Hug", "text": "Give yourself a hug", "count": 2},
            ],
            "detectedCharacters": [{**buddy, "appearsOn": ["icon_0", "icon_1"]}],
        }
    if kind == ResourceKind.board_game:
        return {
            "name": "Feelings Forest",
            "grid": {
                "rows": 4,
                "cols": 4,
                "cells": [{"label": "Start"}] + [{"label": ""}] * 14 + [{"label": "Finish"}],
            },
            "boardImagePrompt": "A winding forest path with Start and Finish signs",
            "tokens": [
                {"name": "Player 1", "color": "#FF6B6B"},
                {"name": "Player 2", "color": "#4ECDC4"},
            ],
            "cards": [
                {"title": "Share", "text": "Share something that made you smile today"},
                {"title": "Move", "text": "Move ahead two spaces"},
            ],
        }
    if kind == ResourceKind.book:
        return {
            "name": "Bramble Finds Brave",
            "bookType": "story",
            "cover": {
                "title": "Bramble Finds Brave",
                "imagePrompt": "Bramble the hedgehog standing at the edge of a bright meadow",
            },
            "pages": [
                {
                    "text": f"Page {i + 1} of Bramble's adventure.",
                    "imagePrompt": f"Bramble the hedgehog, scene {i + 1}, soft morning light",
                }
                for i in range(4)
            ],
            "detectedCharacters": [
                {**buddy, "appearsOn": ["cover", "page_0", "page_1", "page_2", "page_3"]},
            ],
        }
    if kind == ResourceKind.worksheet:
        return {
            "name": "My Feelings Check-In",
            "headerImagePrompt": "A row of smiling faces showing different feelings",
            "blocks": [
                {"type": "heading", "text": "How am I feeling today?"},
                {"type": "image", "imagePrompt": "Thermometer of feelings from calm to upset"},
                {"type": "prompt", "text": "Circle the feeling that fits you best."},
                {"type": "lines", "count": 3},
            ],
        }
    return {
        "name": "Custom Illustration",
        "prompt": "A peaceful garden with stepping stones and wind chimes",
        "output": {"aspect": "4:3"},
    }


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of an LLM response"""
    try:
        # Clean up response (remove markdown code blocks if present)
        text = text.strip()
        if text.startswith("```json"):
            text = text[7:]
        if text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error("JSON parse error", error=str(e), text=text[:500])
        raise LLMError(
            ErrorCode.LLM_JSON_INVALID,
            f"Failed to parse generated content as JSON: {str(e)}",
            raw_output=text[:500],
        )

    if not isinstance(data, dict):
        raise LLMError(
            ErrorCode.LLM_JSON_INVALID,
            "Generated content is not a JSON object",
            raw_output=text[:500],
        )
    return data


# ==================== Public API ====================


async def load_characters_from_db(character_ids: List[str]) -> List[dict]:
    """Load character descriptions for prompt context"""
    if not character_ids:
        return []

    from resource_wizard.core.database import AsyncSessionLocal
    from resource_wizard.models.db import Character
    from sqlalchemy import select

    async with AsyncSessionLocal() as session:
        result = await session.execute(select(Character).where(Character.id.in_(character_ids)))
        characters = result.scalars().all()

        return [
            {
                "name": c.name,
                "description": c.description,
                "personality": c.personality,
            }
            for c in characters
        ]


async def call_content_generation(
    kind: ResourceKind,
    description: str,
    style: Optional[StylePreset] = None,
    character_ids: Optional[List[str]] = None,
    character_mode: Optional[CharacterMode] = None,
) -> Dict[str, Any]:
    """Generate structured content for a resource kind"""
    kind = ResourceKind(kind)
    characters = await load_characters_from_db(character_ids or [])

    system_prompt = render_prompt(
        "generate_content.system.jinja2",
        kind=kind.value,
        appears_on_keys=APPEARS_ON_KEYS[kind],
        detect_characters=not character_ids,
    )
    user_prompt = render_prompt(
        "generate_content.user.jinja2",
        description=description,
        style=style.model_dump() if style else None,
        characters=characters,
        character_mode=character_mode.value if character_mode else None,
    )

    response = await call_llm(system_prompt, user_prompt, max_tokens=4000, temperature=0.8)
    content = parse_json_response(response)
    logger.info(
        "Content generated",
        kind=kind.value,
        detected=len(content.get("detectedCharacters") or []),
    )
    return content


class LLMContentGenerator:
    """ContentGenerator backed by the configured LLM provider"""

    async def generate(
        self,
        kind: ResourceKind,
        description: str,
        style: Optional[StylePreset] = None,
        character_ids: Optional[List[str]] = None,
        character_mode: Optional[CharacterMode] = None,
    ) -> Dict[str, Any]:
        try:
            kind = ResourceKind(kind)
        except ValueError:
            raise ContentGenerationError(
                f"No content generator for resource kind: {kind}",
                code=ErrorCode.CONTENT_UNSUPPORTED,
            )
        return await call_content_generation(
            kind, description, style, character_ids, character_mode
        )
