"""
Image Generation Service: provider calls, prompt assembly, asset versions
"""

import asyncio
import hashlib
from typing import Dict, List, Optional, Tuple

import httpx
import structlog
from sqlalchemy import select

from resource_wizard.core.config import settings
from resource_wizard.core.database import AsyncSessionLocal
from resource_wizard.core.errors import ErrorCode, ImageError, get_backoff, is_retryable
from resource_wizard.models.db import Character, StyledPortrait
from resource_wizard.models.dto import StylePreset
from resource_wizard.services.storage import ResourceStore

logger = structlog.get_logger()

NO_TEXT_INSTRUCTION = (
    "Do NOT include any text, letters, numbers or words anywhere in the image."
)
TEXT_INSTRUCTION = "Render any quoted text exactly as written, large and clearly legible."
GREEN_SCREEN_INSTRUCTION = (
    "Single isolated subject centered on a solid flat pure green (#00FF00) background. "
    "No scenery, no shadows, no gradients, nothing else in the frame."
)


async def generate_image(
    prompt: str,
    aspect: str = "1:1",
    asset_key: str = None,
    reference_urls: Optional[List[str]] = None,
) -> str:
    """
    Generate image from prompt

    Args:
        reference_urls: character reference portraits the image should stay
            consistent with; switches providers to their image-conditioned model

    Returns:
        Image URL
    """
    reference_urls = reference_urls or []
    if settings.image_provider == "replicate":
        return await _generate_replicate(prompt, aspect, asset_key, reference_urls)
    elif settings.image_provider == "fal":
        return await _generate_fal(prompt, aspect, asset_key, reference_urls)
    elif settings.image_provider == "mock":
        return await _generate_mock(prompt, aspect, asset_key, reference_urls)
    else:
        raise ValueError(f"Unknown image provider: {settings.image_provider}")


async def _generate_replicate(
    prompt: str, aspect: str, asset_key: str, reference_urls: List[str]
) -> str:
    """Generate image using Replicate API (Flux, Kontext when a reference is given)"""
    if not settings.image_api_key:
        raise ImageError(
            ErrorCode.IMAGE_FAILED,
            "Replicate API key is not configured. Set the IMAGE_API_KEY environment variable.",
            asset_key=asset_key,
        )

    async with httpx.AsyncClient(timeout=settings.image_timeout) as client:
        model = "flux-schnell"
        payload = {
            "prompt": prompt,
            "aspect_ratio": aspect,
            "num_outputs": 1,
            "output_format": "png",
        }
        if reference_urls:
            # Kontext takes a single input image
            model = "flux-kontext-pro"
            payload = {
                "prompt": prompt,
                "aspect_ratio": aspect,
                "input_image": reference_urls[0],
                "output_format": "png",
            }

        # Create prediction
        response = await client.post(
            f"https://api.replicate.com/v1/models/black-forest-labs/{model}/predictions",
            headers={
                "Authorization": f"Token {settings.image_api_key}",
                "Content-Type": "application/json",
            },
            json={"input": payload},
        )

        if response.status_code == 429:
            raise ImageError(ErrorCode.IMAGE_RATE_LIMIT, "Replicate rate limit", asset_key=asset_key)
        if response.status_code != 201:
            logger.error(
                "Replicate create error",
                status=response.status_code,
                body=response.text,
            )
            raise ImageError(
                ErrorCode.IMAGE_FAILED,
                f"Replicate API error: {response.status_code}",
                asset_key=asset_key,
            )

        prediction = response.json()
        prediction_id = prediction["id"]

        # Poll for completion
        for _ in range(60):  # Max 60 attempts (1 per second)
            await asyncio.sleep(1)

            poll_response = await client.get(
                f"https://api.replicate.com/v1/predictions/{prediction_id}",
                headers={"Authorization": f"Token {settings.image_api_key}"},
            )

            if poll_response.status_code != 200:
                continue

            result = poll_response.json()
            status = result.get("status")

            if status == "succeeded":
                output = result.get("output", [])
                # kontext returns a single URL, schnell a list
                if isinstance(output, str) and output:
                    return output
                if output:
                    return output[0]
                raise ImageError(
                    ErrorCode.IMAGE_FAILED, "No output from Replicate", asset_key=asset_key
                )

            elif status == "failed":
                error = result.get("error", "Unknown error")
                raise ImageError(
                    ErrorCode.IMAGE_FAILED,
                    f"Replicate failed: {error}",
                    asset_key=asset_key,
                )

        raise ImageError(
            ErrorCode.IMAGE_TIMEOUT, "Replicate prediction timeout", asset_key=asset_key
        )


async def _generate_fal(
    prompt: str, aspect: str, asset_key: str, reference_urls: List[str]
) -> str:
    """Generate image using FAL.ai API"""
    if not settings.image_api_key:
        raise ImageError(
            ErrorCode.IMAGE_FAILED,
            "FAL API key is not configured. Set the IMAGE_API_KEY environment variable.",
            asset_key=asset_key,
        )

    async with httpx.AsyncClient(timeout=settings.image_timeout) as client:
        url = "https://fal.run/fal-ai/flux/schnell"
        payload = {
            "prompt": prompt,
            "image_size": _get_fal_size(aspect),
            "num_inference_steps": 4,
            "num_images": 1,
            "enable_safety_checker": True,
        }
        if reference_urls:
            url = "https://fal.run/fal-ai/flux-pro/kontext/multi"
            payload = {
                "prompt": prompt,
                "image_urls": reference_urls,
                "aspect_ratio": aspect,
                "num_images": 1,
            }

        response = await client.post(
            url,
            headers={
                "Authorization": f"Key {settings.image_api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )

        if response.status_code == 429:
            raise ImageError(ErrorCode.IMAGE_RATE_LIMIT, "FAL rate limit", asset_key=asset_key)
        if response.status_code != 200:
            logger.error("FAL API error", status=response.status_code, body=response.text)
            raise ImageError(
                ErrorCode.IMAGE_FAILED,
                f"FAL API error: {response.status_code}",
                asset_key=asset_key,
            )

        result = response.json()
        images = result.get("images", [])

        if images:
            return images[0].get("url", "")

        raise ImageError(ErrorCode.IMAGE_FAILED, "No output from FAL", asset_key=asset_key)


async def _generate_mock(
    prompt: str, aspect: str, asset_key: str, reference_urls: List[str]
) -> str:
    """Mock image generation for testing"""
    await asyncio.sleep(0.01)  # Simulate API delay
    seed_source = ":".join([asset_key or "", prompt, *reference_urls])
    seed = hashlib.sha1(seed_source.encode()).hexdigest()[:12]
    return f"https://picsum.photos/seed/{seed}/{_get_width(aspect)}/{_get_height(aspect)}"


def _get_width(aspect_ratio: str) -> int:
    """Get width for aspect ratio"""
    ratios = {
        "1:1": 1024,
        "3:4": 768,
        "4:3": 1024,
    }
    return ratios.get(aspect_ratio, 1024)


def _get_height(aspect_ratio: str) -> int:
    """Get height for aspect ratio"""
    ratios = {
        "1:1": 1024,
        "3:4": 1024,
        "4:3": 768,
    }
    return ratios.get(aspect_ratio, 1024)


def _get_fal_size(aspect_ratio: str) -> str:
    """Get FAL size string"""
    sizes = {
        "1:1": "square_hd",
        "3:4": "portrait_4_3",
        "4:3": "landscape_4_3",
    }
    return sizes.get(aspect_ratio, "square_hd")


# ==================== Prompt Assembly ====================


def build_image_prompt(
    prompt: str,
    style: Optional[StylePreset] = None,
    character_fragments: Optional[List[str]] = None,
    include_text: bool = False,
    green_screen: bool = False,
) -> str:
    parts = [prompt.strip()]
    if character_fragments:
        parts.append("Featuring: " + "; ".join(character_fragments))
    if style is not None:
        if style.illustration_style:
            parts.append(f"Illustration style: {style.illustration_style}")
        parts.append(
            f"Color palette: {style.colors.primary}, {style.colors.secondary}, "
            f"{style.colors.accent} on {style.colors.background}"
        )
    if green_screen:
        parts.append(GREEN_SCREEN_INSTRUCTION)
    parts.append(TEXT_INSTRUCTION if include_text else NO_TEXT_INSTRUCTION)
    return "\n".join(p for p in parts if p)


class ImageService:
    """ImageGenerator: provider call with retries, then a new asset version"""

    def __init__(self, store: Optional[ResourceStore] = None, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory
        self.store = store or ResourceStore(session_factory)

    async def _character_context(
        self, character_ids: Optional[List[str]], style: Optional[StylePreset]
    ) -> Tuple[List[str], List[str]]:
        """Prompt fragments and styled reference portrait URLs, in character order"""
        if not character_ids:
            return [], []
        portraits: Dict[str, str] = {}
        async with self.session_factory() as session:
            result = await session.execute(select(Character).where(Character.id.in_(character_ids)))
            by_id: Dict[str, Character] = {c.id: c for c in result.scalars().all()}
            if style is not None:
                result = await session.execute(
                    select(StyledPortrait).where(
                        StyledPortrait.character_id.in_(character_ids),
                        StyledPortrait.style_id == style.id,
                    )
                )
                portraits = {p.character_id: p.image_url for p in result.scalars().all()}
        fragments = [
            f"{by_id[cid].name}: {by_id[cid].prompt_fragment}"
            for cid in character_ids
            if cid in by_id and by_id[cid].prompt_fragment
        ]
        return fragments, [portraits[cid] for cid in character_ids if portraits.get(cid)]

    async def _generate_with_retry(
        self, prompt: str, aspect: str, asset_key: str, reference_urls: List[str]
    ) -> str:
        max_retries = settings.image_max_retries
        for attempt in range(max_retries + 1):
            try:
                return await asyncio.wait_for(
                    generate_image(prompt, aspect, asset_key, reference_urls),
                    timeout=settings.image_timeout,
                )
            except asyncio.TimeoutError:
                error = ImageError(ErrorCode.IMAGE_TIMEOUT, "Image generation timed out", asset_key=asset_key)
            except ImageError as e:
                error = e
            except httpx.HTTPError as e:
                error = ImageError(ErrorCode.IMAGE_FAILED, f"Image provider request failed: {e}", asset_key=asset_key)

            if not is_retryable(error) or attempt >= max_retries:
                raise error
            wait_time = get_backoff(error.code, attempt)
            logger.warning(
                "Image generation retry",
                asset_key=asset_key,
                attempt=attempt + 1,
                error_code=error.code.value,
                wait=wait_time,
            )
            await asyncio.sleep(wait_time)

        raise RuntimeError(f"Image generation for {asset_key} failed without exception")

    async def _generate(
        self,
        owner_id: str,
        asset_kind: str,
        asset_key: str,
        prompt: str,
        style: Optional[StylePreset],
        character_ids: Optional[List[str]],
        include_text: bool,
        aspect: str,
        green_screen: bool,
    ) -> str:
        fragments, reference_urls = await self._character_context(character_ids, style)
        full_prompt = build_image_prompt(prompt, style, fragments, include_text, green_screen)
        url = await self._generate_with_retry(full_prompt, aspect, asset_key, reference_urls)
        version = await self.store.record_asset_version(
            owner_id,
            asset_kind,
            asset_key,
            url,
            prompt=full_prompt,
            params={
                "aspect": aspect,
                "green_screen": green_screen,
                "include_text": include_text,
                "character_ids": character_ids or [],
                "reference_urls": reference_urls,
                "style_id": style.id if style else None,
            },
        )
        logger.info("Image generated", owner_id=owner_id, asset_key=asset_key, version=version)
        return url

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
        return await self._generate(
            owner_id, asset_kind, asset_key, prompt, style, character_ids, include_text, aspect,
            green_screen=False,
        )

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
        """Icon-style variant: subject on a chroma-key background for later keying"""
        return await self._generate(
            owner_id, asset_kind, asset_key, prompt, style, character_ids, include_text, aspect,
            green_screen=True,
        )
