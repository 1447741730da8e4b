"""
image-normalize - Converts and resizes uploaded images in place.

Pulls S3-style bucket notifications from NATS JetStream. For the first record
in each notification it checks the object's metadata for the processed flag,
skips formats that are not enabled, converts camera containers (HEIC) to a
standard encoding, resizes to a fixed width, and overwrites the original
object with the result plus metadata marking it processed.

The processed flag is advisory: two deliveries of the same notification that
race each other can both pass the check, and the last write wins.
"""

import asyncio
import enum
import io
import logging
import os
import posixpath
from typing import NamedTuple
from urllib.parse import unquote_plus

from PIL import Image
from pillow_heif import register_heif_opener

from shared_py.nats_consumer import run_consumer
from shared_py.storage import MetadataFetchError, download_object, read_metadata, upload_object

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

register_heif_opener()

DEFAULT_TARGET_WIDTH = 1000
DEFAULT_ENABLED_FORMATS = "heic"
PROCESSED_FLAG_KEYS = ("image-processed", "Image-Processed")


class ConversionError(Exception):
    """The source container could not be decoded."""


class DecodeError(Exception):
    """The buffer handed to the resize stage is not a readable image."""


class TransformRequest(NamedTuple):
    bucket: str
    raw_key: str


class ResolvedKey(NamedTuple):
    key: str
    directory: str
    base_name: str
    extension: str

    @property
    def image_type(self) -> str:
        return self.extension.lower()

    def join(self) -> str:
        name = f"{self.base_name}.{self.extension}" if self.extension else self.base_name
        return posixpath.join(self.directory, name)


class SourceFormat(NamedTuple):
    needs_conversion: bool
    output_format: str
    pil_format: str

    @property
    def content_type(self) -> str:
        return f"image/{self.output_format}"


# One row per source extension; ENABLED_FORMATS decides which rows are live.
SOURCE_FORMATS = {
    "heic": SourceFormat(needs_conversion=True, output_format="jpg", pil_format="JPEG"),
    "jpg": SourceFormat(needs_conversion=False, output_format="jpeg", pil_format="JPEG"),
    "jpeg": SourceFormat(needs_conversion=False, output_format="jpeg", pil_format="JPEG"),
    "png": SourceFormat(needs_conversion=False, output_format="png", pil_format="PNG"),
}


class ProcessedState(enum.Enum):
    FLAGGED = "flagged"
    NOT_FLAGGED = "not-flagged"
    UNKNOWN = "unknown"


def target_width() -> int:
    return int(os.environ.get("TARGET_WIDTH", DEFAULT_TARGET_WIDTH))


def enabled_formats() -> frozenset[str]:
    """Extensions enabled through ENABLED_FORMATS (comma-separated)."""
    raw = os.environ.get("ENABLED_FORMATS", DEFAULT_ENABLED_FORMATS)
    return frozenset(ext.strip().lower() for ext in raw.split(",") if ext.strip())


def parse_event(data: dict) -> TransformRequest:
    """Build a TransformRequest from the first record of a bucket notification."""
    records = data.get("Records")
    if not records:
        raise ValueError("Missing 'Records' in event data")
    if len(records) > 1:
        logger.warning(f"Event has {len(records)} records, only the first is processed")

    s3 = records[0].get("s3") or {}
    bucket = (s3.get("bucket") or {}).get("name")
    key = (s3.get("object") or {}).get("key")
    if not bucket or not key:
        raise ValueError("Missing bucket name or object key in event record")
    return TransformRequest(bucket=bucket, raw_key=key)


def resolve_key(raw_key: str) -> ResolvedKey:
    """Decode a notification key ('+' for space, percent-encoding) and split it."""
    key = unquote_plus(raw_key)
    directory, filename = posixpath.split(key)
    base_name, suffix = posixpath.splitext(filename)
    if suffix == ".":
        base_name, suffix = filename, ""
    return ResolvedKey(key=key, directory=directory, base_name=base_name, extension=suffix[1:])


def processed_state(metadata: dict) -> ProcessedState:
    # First non-empty variant wins.
    value = next((metadata[name] for name in PROCESSED_FLAG_KEYS if metadata.get(name)), "")
    if str(value).lower() == "true":
        return ProcessedState.FLAGGED
    return ProcessedState.NOT_FLAGGED


def read_processed_state(bucket: str, key: str) -> ProcessedState:
    """Look up the processed flag, returning UNKNOWN when metadata can't be read."""
    try:
        metadata = read_metadata(bucket, key)
    except MetadataFetchError as err:
        logger.warning(f"Metadata check failed, proceeding without it: {err.__cause__ or err}")
        return ProcessedState.UNKNOWN
    return processed_state(metadata)


def needs_processing(state: ProcessedState) -> bool:
    # Fail open: an unreadable flag counts as not set.
    if state is ProcessedState.UNKNOWN:
        state = ProcessedState.NOT_FLAGGED
    return state is ProcessedState.NOT_FLAGGED


def is_supported(image_type: str) -> bool:
    return image_type in SOURCE_FORMATS and image_type in enabled_formats()


def convert_image(data: bytes, source_format: SourceFormat) -> bytes:
    """Decode a camera container into lossless PNG; other formats pass through."""
    if not source_format.needs_conversion:
        return data

    try:
        img = Image.open(io.BytesIO(data), formats=["HEIF"])
        img.load()
    except (OSError, ValueError, RuntimeError, Image.DecompressionBombError) as err:
        raise ConversionError(f"Failed to decode HEIC container: {err}") from err

    buf = io.BytesIO()
    img.save(buf, format="PNG", compress_level=1)
    logger.info(f"Converted HEIC {img.size[0]}x{img.size[1]} to PNG ({buf.tell()} bytes)")
    return buf.getvalue()


def resize_image(image_bytes: bytes, width: int, source_format: SourceFormat) -> tuple[bytes, int, int]:
    """Resize to exactly `width` pixels wide, keeping the aspect ratio.

    Returns (resized_bytes, width, height). Unlike a thumbnail this also
    enlarges images narrower than `width`.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (OSError, ValueError, Image.DecompressionBombError) as err:
        raise DecodeError(f"Not a decodable image: {err}") from err

    w, h = img.size
    height = max(1, round(h * width / w))
    resized = img.resize((width, height), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    if source_format.pil_format == "JPEG":
        if resized.mode not in ("RGB", "L"):
            resized = resized.convert("RGB")
        resized.save(buf, format="JPEG", quality=100, subsampling=0)
    else:
        resized.save(buf, format=source_format.pil_format)
    return buf.getvalue(), width, height


def publish_image(request: TransformRequest, resolved: ResolvedKey, data: bytes, source_format: SourceFormat):
    """Overwrite the source object with the transformed bytes and processed flag."""
    metadata = {
        "image-processed": "true",
        "processed-width": str(target_width()),
        "original-ext": resolved.image_type,
        "output-format": source_format.output_format,
    }
    return upload_object(request.bucket, resolved.key, data, source_format.content_type, metadata)


def transform_object(request: TransformRequest) -> str:
    """Run the whole pipeline for one object and return a status line."""
    resolved = resolve_key(request.raw_key)
    logger.info(f"Processing file: {request.bucket}/{resolved.key}")

    state = read_processed_state(request.bucket, resolved.key)
    if not needs_processing(state):
        logger.info("Object already processed (metadata flag present), skipping")
        return f"Skipped {request.bucket}/{resolved.key}: already processed"

    image_type = resolved.image_type
    logger.info(f"File type: {image_type!r}")
    if not is_supported(image_type):
        logger.info(f"Unsupported image type: {image_type!r}")
        return f"Skipped {request.bucket}/{resolved.key}: unsupported image type {image_type!r}"
    source_format = SOURCE_FORMATS[image_type]

    # Download
    image_bytes = download_object(request.bucket, resolved.key)
    logger.info(f"Downloaded {len(image_bytes)} bytes")

    # Convert, then resize
    working = convert_image(image_bytes, source_format)
    resized_bytes, new_w, new_h = resize_image(working, target_width(), source_format)
    logger.info(f"Resized to {new_w}x{new_h} ({len(resized_bytes)} bytes)")

    # Overwrite in place
    publish_image(request, resolved, resized_bytes, source_format)
    logger.info(f"Overwrote {resolved.key} as {source_format.content_type}")

    return f"Processed and overwritten {request.bucket}/{resolved.key} (format: {source_format.output_format})"


async def handle_event(data: dict):
    """Handle a bucket notification message.

    The pipeline blocks on storage I/O and image decoding, so it runs in a
    worker thread to keep the consumer's timeout and health check live. A
    timed-out run keeps going in its thread; its write may still land.
    """
    logger.info(f"Received event with {len(data.get('Records') or [])} record(s)")
    return await asyncio.to_thread(transform_object, parse_event(data))


if __name__ == "__main__":
    run_consumer(handler=handle_event, job_name="image-normalize")
