import asyncio
import base64
import logging
from typing import Callable, List, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from outfit_studio import config
from outfit_studio.models import GenerationRequest, ImagePart

logger = logging.getLogger(__name__)

# AVIF is converted during ingestion, so only these reach the provider
PROVIDER_MIME_TYPES = ("image/png", "image/jpeg", "image/webp", "image/heic", "image/heif")

# Messages that mean the selected key cannot reach the model
KEY_REVOCATION_MARKERS = ("Requested entity was not found", "401", "403")


class GenerationError(Exception):
    status_code = 500


class MissingApiKeyError(GenerationError):
    status_code = 503


class UnsupportedImageFormatError(GenerationError):
    status_code = 415


class NoImageGeneratedError(GenerationError):
    status_code = 502


class ProviderUnresponsiveError(GenerationError):
    status_code = 504


class ProviderError(GenerationError):
    status_code = 502


def validate_mime_type(mime_type: str) -> None:
    if mime_type not in PROVIDER_MIME_TYPES:
        raise UnsupportedImageFormatError(
            f"Unsupported image format: {mime_type}. Please use PNG, JPEG, WEBP, or HEIC."
        )


def is_key_revocation_error(message: str) -> bool:
    return any(marker in message for marker in KEY_REVOCATION_MARKERS)


def to_provider_parts(request: GenerationRequest) -> List[types.Part]:
    parts = []
    for part in request.parts:
        if isinstance(part, ImagePart):
            parts.append(types.Part(
                inline_data=types.Blob(mime_type=part.mime_type, data=base64.b64decode(part.data))
            ))
        else:
            parts.append(types.Part(text=part.text))
    return parts


def extract_image_data_uri(response) -> str:
    """Return the first inline image of the first candidate as a PNG data URI."""
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline_data = getattr(part, "inline_data", None)
            if inline_data is not None and inline_data.data:
                data = inline_data.data
                if isinstance(data, bytes):
                    data = base64.b64encode(data).decode("utf-8")
                return f"data:image/png;base64,{data}"

    message = "No image generated in the response."
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback else None
    if block_reason:
        message = f"{message} Reason: {block_reason}"
    raise NoImageGeneratedError(message)


def _default_client_factory(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


class ImageGenerator:
    """Sends one composed request to the image model and returns the image as a data URI."""

    def __init__(
        self,
        client_factory: Callable[[str], genai.Client] = _default_client_factory,
        model: str = config.GEMINI_IMAGE_MODEL,
        image_size: str = config.GEMINI_IMAGE_SIZE,
        timeout: Optional[float] = config.GENERATION_TIMEOUT_SECONDS,
    ):
        self.client_factory = client_factory
        self.model = model
        self.image_size = image_size
        self.timeout = timeout

    async def generate(self, request: GenerationRequest) -> str:
        api_key = config.get_gemini_api_key()
        if not api_key:
            raise MissingApiKeyError("Gemini API Key is missing. Please set GEMINI_API_KEY in your .env file.")

        for part in request.image_parts:
            validate_mime_type(part.mime_type)

        # Instantiate per call so a newly supplied key is used
        client = self.client_factory(api_key)
        contents = types.Content(role="user", parts=to_provider_parts(request))
        generation_config = types.GenerateContentConfig(
            image_config=types.ImageConfig(
                image_size=self.image_size,
                aspect_ratio=request.aspect_ratio,
            )
        )

        logger.info(
            f"Requesting {self.model} with {len(request.image_parts)} image(s), aspect ratio {request.aspect_ratio}"
        )
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    client.models.generate_content,
                    model=self.model,
                    contents=contents,
                    config=generation_config,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Image model did not answer within {self.timeout}s")
            raise ProviderUnresponsiveError(
                f"The image model did not respond within {self.timeout:g} seconds. Please try again."
            )
        except genai_errors.APIError as e:
            logger.error(f"Gemini Image Generation Error: {e}")
            raise ProviderError(str(e)) from e

        return extract_image_data_uri(response)
