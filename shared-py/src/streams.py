"""Collect object bodies into a single bytes buffer.

Storage clients hand back bodies in several shapes: botocore's StreamingBody
(chunk iterator and reader), plain file-like readers, generators of chunks, or
bytes that are already materialized. collect_body() accepts any of them and
either returns the whole payload or raises.
"""

import logging

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class UnsupportedSourceType(TypeError):
    """The body is none of the shapes collect_body() knows how to read."""


class IncompleteBodyError(IOError):
    """The collected payload length does not match the advertised length."""


def _from_chunks(chunks) -> bytes:
    buf = bytearray()
    for chunk in chunks:
        buf += chunk
    return bytes(buf)


def collect_body(body, expected_length: int | None = None) -> bytes:
    """Read `body` to the end and return its bytes.

    Push-style sources (``iter_chunks()`` or a plain iterable of chunks) are
    preferred over pull-style ``read()``, so large bodies are never read with
    a single unbounded call on streams that support chunking. Errors raised by
    the source propagate unchanged.
    """
    if isinstance(body, (bytes, bytearray, memoryview)):
        data = bytes(body)
    elif hasattr(body, "iter_chunks"):
        data = _from_chunks(body.iter_chunks(chunk_size=CHUNK_SIZE))
    elif hasattr(body, "read"):
        data = body.read()
        if not isinstance(data, (bytes, bytearray)):
            raise UnsupportedSourceType(f"read() returned {type(data).__name__}, expected bytes")
        data = bytes(data)
    elif hasattr(body, "__iter__") and not isinstance(body, str):
        data = _from_chunks(body)
    else:
        raise UnsupportedSourceType(f"Unsupported body type: {type(body).__name__}")

    if expected_length is not None and len(data) != expected_length:
        raise IncompleteBodyError(f"Expected {expected_length} bytes, got {len(data)}")

    logger.debug(f"Collected {len(data)} bytes from {type(body).__name__}")
    return data
