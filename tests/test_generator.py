import asyncio
import base64
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from outfit_studio.generator import (
    ImageGenerator,
    MissingApiKeyError,
    NoImageGeneratedError,
    ProviderError,
    ProviderUnresponsiveError,
    UnsupportedImageFormatError,
    extract_image_data_uri,
    is_key_revocation_error,
)
from outfit_studio.ingestion import normalize_image
from outfit_studio.models import GenerationRequest, GenerationSettings, ImagePart, OperatingMode, TextPart
from outfit_studio.prompts import compose
from tests.fakes import FakeGenaiClient, FakeModels, image_response, png_bytes


def make_generator(models, timeout=5):
    return ImageGenerator(client_factory=lambda api_key: FakeGenaiClient(models), timeout=timeout)


def two_product_request():
    products = [normalize_image(png_bytes(), "image/png", f"p{i}.png") for i in range(2)]
    return compose(OperatingMode.AI_MODEL, products, None, GenerationSettings(subject="red jacket"))


def test_generate_sends_one_ordered_request(generator, fake_models):
    image_url = asyncio.run(generator.generate(two_product_request()))

    assert image_url == "data:image/png;base64," + base64.b64encode(b"generated-png-bytes").decode()
    assert len(fake_models.calls) == 1
    call = fake_models.calls[0]
    assert call["model"] == generator.model
    parts = call["contents"].parts
    assert len(parts) == 3
    assert parts[0].inline_data.mime_type == "image/png"
    assert parts[0].inline_data.data == png_bytes()
    assert "red jacket" in parts[2].text
    assert call["config"].image_config.aspect_ratio == "3:4"
    assert call["config"].image_config.image_size == generator.image_size


def test_flat_lay_uses_landscape(generator, fake_models):
    products = [normalize_image(png_bytes(), "image/png")]
    request = compose(OperatingMode.FLAT_LAY, products, None, GenerationSettings(subject="Knolling"))

    asyncio.run(generator.generate(request))

    assert fake_models.calls[0]["config"].image_config.aspect_ratio == "4:3"


def test_key_is_read_on_every_call(monkeypatch):
    keys = []
    generator = ImageGenerator(client_factory=lambda api_key: keys.append(api_key) or FakeGenaiClient(FakeModels()))

    monkeypatch.setenv("GEMINI_API_KEY", "first")
    asyncio.run(generator.generate(two_product_request()))
    monkeypatch.setenv("GEMINI_API_KEY", "second")
    asyncio.run(generator.generate(two_product_request()))

    assert keys == ["first", "second"]


@pytest.mark.parametrize("response", [
    SimpleNamespace(candidates=[], prompt_feedback=None),
    SimpleNamespace(candidates=None, prompt_feedback=None),
    SimpleNamespace(candidates=[SimpleNamespace(content=None)], prompt_feedback=None),
    SimpleNamespace(
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=[SimpleNamespace(text="sorry", inline_data=None)]))],
        prompt_feedback=None,
    ),
])
def test_response_without_image_fails(gemini_key, response):
    generator = make_generator(FakeModels(response=response))

    with pytest.raises(NoImageGeneratedError, match="No image generated in the response."):
        asyncio.run(generator.generate(two_product_request()))


def test_block_reason_is_reported():
    response = SimpleNamespace(candidates=[], prompt_feedback=SimpleNamespace(block_reason="SAFETY"))

    with pytest.raises(NoImageGeneratedError, match="Reason: SAFETY"):
        extract_image_data_uri(response)


def test_string_image_data_is_used_as_is():
    assert extract_image_data_uri(image_response(data="QUJD")) == "data:image/png;base64,QUJD"


def test_unsupported_format_is_rejected_before_calling(generator, fake_models):
    request = GenerationRequest(
        parts=[ImagePart(mime_type="image/avif", data="QUJD"), TextPart(text="prompt")],
        aspect_ratio="3:4",
    )

    with pytest.raises(UnsupportedImageFormatError, match="Unsupported image format: image/avif"):
        asyncio.run(generator.generate(request))
    assert fake_models.calls == []


def test_missing_key(monkeypatch, fake_models):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    generator = make_generator(fake_models)

    with pytest.raises(MissingApiKeyError):
        asyncio.run(generator.generate(two_product_request()))
    assert fake_models.calls == []


def test_unresponsive_provider_times_out(gemini_key):
    generator = make_generator(FakeModels(delay=0.5), timeout=0.05)

    with pytest.raises(ProviderUnresponsiveError):
        asyncio.run(generator.generate(two_product_request()))


def test_provider_errors_are_wrapped(gemini_key):
    error = genai_errors.ClientError(403, {"error": {"code": 403, "message": "Permission denied",
                                                     "status": "PERMISSION_DENIED"}})
    generator = make_generator(FakeModels(error=error))

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(generator.generate(two_product_request()))
    assert is_key_revocation_error(str(excinfo.value))


@pytest.mark.parametrize("message, revoked", [
    ("Requested entity was not found.", True),
    ("401 UNAUTHENTICATED", True),
    ("403 PERMISSION_DENIED", True),
    ("500 INTERNAL", False),
    ("No image generated in the response.", False),
])
def test_key_revocation_heuristic(message, revoked):
    assert is_key_revocation_error(message) is revoked
