"""Image ingestion: validate uploads and normalize them into NormalizedImage records.

AVIF uploads are accepted only to be re-encoded as PNG. Conversion is best
effort: when Pillow cannot decode the file the original payload is kept and
the record is marked as a passthrough so callers can warn about it.
"""
import asyncio
import base64
import logging
import uuid
from io import BytesIO
from typing import List, Optional, Sequence

from fastapi import UploadFile
from PIL import Image

from outfit_studio.models import ConversionOutcome, NormalizedImage

logger = logging.getLogger(__name__)

PNG = "image/png"
AVIF = "image/avif"

# Allow AVIF at the upload boundary, it is converted before reaching the provider
SUPPORTED_UPLOAD_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "image/heif",
    AVIF,
})


def new_image_id() -> str:
    return uuid.uuid4().hex[:9]


def is_supported_upload(mime_type: Optional[str]) -> bool:
    return mime_type in SUPPORTED_UPLOAD_TYPES


def convert_avif_to_png(data: bytes) -> Optional[bytes]:
    """Re-encode AVIF bytes as PNG, or return None when they cannot be decoded."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                img = img.convert("RGBA")
            buffer = BytesIO()
            img.save(buffer, format="PNG")
            return buffer.getvalue()
    except Exception as e:
        logger.warning(f"AVIF decode failed, keeping original payload: {e}")
        return None


def _build_record(data: bytes, mime_type: str, filename: Optional[str],
                  conversion: ConversionOutcome) -> NormalizedImage:
    encoded = base64.b64encode(data).decode("utf-8")
    return NormalizedImage(
        id=new_image_id(),
        base64=encoded,
        mime_type=mime_type,
        preview_url=f"data:{mime_type};base64,{encoded}",
        filename=filename,
        conversion=conversion,
    )


def normalize_image(data: bytes, mime_type: str, filename: Optional[str] = None) -> Optional[NormalizedImage]:
    """Turn one uploaded file into a NormalizedImage, or None if its type is not accepted."""
    if not is_supported_upload(mime_type):
        logger.warning(f"Skipped unsupported file type: {mime_type} ({filename})")
        return None

    if mime_type == AVIF:
        png_bytes = convert_avif_to_png(data)
        if png_bytes is not None:
            return _build_record(png_bytes, PNG, filename, ConversionOutcome.CONVERTED)
        return _build_record(data, AVIF, filename, ConversionOutcome.PASSTHROUGH)

    return _build_record(data, mime_type, filename, ConversionOutcome.UNCHANGED)


async def _read_and_normalize(upload: UploadFile) -> NormalizedImage:
    data = await upload.read()
    # Pillow decoding is blocking, keep it off the event loop
    return await asyncio.to_thread(normalize_image, data, upload.content_type, upload.filename)


async def ingest_uploads(
    existing: Sequence[NormalizedImage],
    uploads: Sequence[UploadFile],
    max_files: int,
) -> List[NormalizedImage]:
    """Append a batch of uploads to an image collection.

    Only as many uploads as fit under ``max_files`` are considered. Unsupported
    types are skipped. The accepted files are processed concurrently and the
    returned collection keeps the existing images first, then the new ones in
    submission order.
    """
    remaining_slots = max_files - len(existing)
    if remaining_slots <= 0:
        return list(existing)

    candidates = list(uploads)[:remaining_slots]
    valid_files = [upload for upload in candidates if is_supported_upload(upload.content_type)]

    if len(valid_files) < len(candidates):
        logger.warning("Skipped unsupported file types.")

    if not valid_files:
        return list(existing)

    processed = await asyncio.gather(*(_read_and_normalize(upload) for upload in valid_files))
    logger.info(f"Ingested {len(processed)} image(s)")
    return list(existing) + list(processed)
