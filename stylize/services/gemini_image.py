"""
Gemini Image Provider
Generation and refinement through native Gemini image models.
Documentation: https://ai.google.dev/gemini-api/docs/image-generation

Every failure leaves this module as a ProviderError carrying one of three
codes: blocked, rate_limited or generation_failed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from stylize.core.config import settings
from stylize.services.imaging import sniff_mime_type
from stylize.services.prompts import SYSTEM_INSTRUCTION, build_refine_prompt, model_for_quality
from stylize.workers.base import ErrorCode, WorkerException

logger = logging.getLogger(__name__)


SAFETY_FINISH_REASONS = {
    "SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII",
    "IMAGE_SAFETY", "IMAGE_PROHIBITED_CONTENT",
}


class ProviderError(WorkerException):
    """Classified provider failure."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        super().__init__(message, code=code, retryable=code != ErrorCode.BLOCKED, details=details)


@dataclass
class ProviderResult:
    image_bytes: bytes
    mime_type: str
    request_id: Optional[str]
    model: str


def _enum_name(value) -> str:
    if value is None:
        return ""
    return getattr(value, "name", None) or str(value)


def classify_provider_error(error: Exception) -> ProviderError:
    """Map an SDK or transport exception to a ProviderError."""
    if isinstance(error, ProviderError):
        return error

    message = str(error)
    if isinstance(error, genai_errors.APIError):
        status = (error.status or "").upper()
        if error.code == 429 or status == "RESOURCE_EXHAUSTED":
            return ProviderError(ErrorCode.RATE_LIMITED, message, {"http_status": error.code})
        lowered = message.lower()
        if "blocked" in lowered or (status == "PERMISSION_DENIED" and "safety" in lowered):
            return ProviderError(ErrorCode.BLOCKED, message, {"http_status": error.code})
        return ProviderError(ErrorCode.GENERATION_FAILED, message, {"http_status": error.code})

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ProviderError(ErrorCode.GENERATION_FAILED, "Provider call timed out")
    if "RESOURCE_EXHAUSTED" in message:
        return ProviderError(ErrorCode.RATE_LIMITED, message)
    if "blocked" in message.lower():
        return ProviderError(ErrorCode.BLOCKED, message)
    return ProviderError(ErrorCode.GENERATION_FAILED, message or error.__class__.__name__)


class GeminiImageService:
    """Provider adapter with one request tail shared by generate and refine."""

    def __init__(self, client: Optional[genai.Client] = None, timeout: Optional[float] = None):
        self.client = client or genai.Client(api_key=settings.GEMINI_API_KEY)
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.name = settings.PROVIDER_NAME

    def _image_part(self, data: bytes) -> types.Part:
        return types.Part.from_bytes(data=data, mime_type=sniff_mime_type(data))

    def _config(self, aspect_ratio: str) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=SYSTEM_INSTRUCTION,
            response_modalities=["TEXT", "IMAGE"],
            image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            safety_settings=[
                types.SafetySetting(
                    category="HARM_CATEGORY_DANGEROUS_CONTENT",
                    threshold="BLOCK_MEDIUM_AND_ABOVE",
                ),
                types.SafetySetting(
                    category="HARM_CATEGORY_HATE_SPEECH",
                    threshold="BLOCK_MEDIUM_AND_ABOVE",
                ),
                types.SafetySetting(
                    category="HARM_CATEGORY_HARASSMENT",
                    threshold="BLOCK_MEDIUM_AND_ABOVE",
                ),
                types.SafetySetting(
                    category="HARM_CATEGORY_SEXUALLY_EXPLICIT",
                    threshold="BLOCK_LOW_AND_ABOVE",
                ),
            ],
        )

    async def generate(
        self,
        prompt: str,
        reference_images: List[bytes],
        aspect_ratio: str = "1:1",
        quality: str = "standard",
    ) -> ProviderResult:
        """Create a new portrait from a prompt and reference selfies."""
        contents = [prompt] + [self._image_part(img) for img in reference_images]
        return await self._call(contents, aspect_ratio, quality, label="generate")

    async def refine(
        self,
        base_image: bytes,
        instruction: str,
        reference_images: List[bytes],
        prompt: Optional[str] = None,
        aspect_ratio: str = "1:1",
        quality: str = "standard",
    ) -> ProviderResult:
        """Apply one instruction to an existing image, keeping identity."""
        text = build_refine_prompt(instruction)
        if prompt:
            text += f"\n\nOriginal style request:\n{prompt}"
        contents = [text, self._image_part(base_image)]
        contents += [self._image_part(img) for img in reference_images]
        return await self._call(contents, aspect_ratio, quality, label="refine")

    async def _call(self, contents: list, aspect_ratio: str, quality: str, label: str) -> ProviderResult:
        model = model_for_quality(quality)
        logger.info(f"[Gemini] {label} with model {model} ({len(contents) - 1} image part(s), aspect {aspect_ratio})")
        logger.debug(f"[Gemini] Prompt preview: {contents[0][:100]!r}")
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=self._config(aspect_ratio),
                ),
                timeout=self.timeout,
            )
        except Exception as e:
            classified = classify_provider_error(e)
            logger.error(f"[Gemini] {label} failed ({classified.code}): {e}")
            raise classified from e

        return self._parse_response(response, model)

    def _parse_response(self, response, model: str) -> ProviderResult:
        request_id = getattr(response, "response_id", None)

        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback else None
        if block_reason:
            logger.warning(f"[Gemini] Prompt blocked: {_enum_name(block_reason)}")
            raise ProviderError(ErrorCode.BLOCKED, f"Prompt blocked: {_enum_name(block_reason)}",
                                {"request_id": request_id})

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise ProviderError(ErrorCode.GENERATION_FAILED, "No generation candidate returned",
                                {"request_id": request_id})

        candidate = candidates[0]
        finish_reason = _enum_name(getattr(candidate, "finish_reason", None)).upper()
        parts = (candidate.content.parts if candidate.content else None) or []
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                logger.info(f"[Gemini] Received {len(inline.data)} bytes ({inline.mime_type})")
                return ProviderResult(
                    image_bytes=inline.data,
                    mime_type=inline.mime_type or "image/png",
                    request_id=request_id,
                    model=model,
                )

        if finish_reason in SAFETY_FINISH_REASONS:
            logger.warning(f"[Gemini] Output blocked: {finish_reason}")
            raise ProviderError(ErrorCode.BLOCKED, f"Output blocked: {finish_reason}", {"request_id": request_id})
        raise ProviderError(ErrorCode.GENERATION_FAILED, f"No image data in response (finish: {finish_reason})",
                            {"request_id": request_id})
