"""Binary encoding of persisted index state.

Layout::

    b"DWV1" | uint32 little-endian header length | UTF-8 JSON header | float32 vectors

The vector block holds ``header["vector_count"]`` rows of
``header["dimension"]`` little-endian float32 values.
"""

from __future__ import annotations

import json
import struct
from typing import Any

import numpy as np

from docweave.errors import IndexIncompatibleError

MAGIC = b"DWV1"
FORMAT_VERSION = 1
_LENGTH = struct.Struct("<I")


def encode_state(header: dict[str, Any], vectors: np.ndarray) -> bytes:
    matrix = np.ascontiguousarray(vectors, dtype="<f4")
    payload = dict(header)
    payload["version"] = FORMAT_VERSION
    payload["vector_count"] = int(matrix.shape[0])
    raw_header = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    return MAGIC + _LENGTH.pack(len(raw_header)) + raw_header + matrix.tobytes()


def decode_state(blob: bytes) -> tuple[dict[str, Any], np.ndarray]:
    """Parse a state blob, raising :class:`IndexIncompatibleError` on any defect."""
    if len(blob) < len(MAGIC) + _LENGTH.size or blob[: len(MAGIC)] != MAGIC:
        raise IndexIncompatibleError("Not a docweave index blob")
    offset = len(MAGIC)
    (header_length,) = _LENGTH.unpack_from(blob, offset)
    offset += _LENGTH.size
    if offset + header_length > len(blob):
        raise IndexIncompatibleError("Truncated index header")
    try:
        header = json.loads(blob[offset : offset + header_length].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise IndexIncompatibleError(f"Corrupt index header: {exc}") from exc
    if not isinstance(header, dict) or header.get("version") != FORMAT_VERSION:
        raise IndexIncompatibleError("Unsupported index format version")
    offset += header_length

    try:
        dimension = int(header["dimension"])
        count = int(header["vector_count"])
    except (KeyError, TypeError, ValueError) as exc:
        raise IndexIncompatibleError("Index header lacks vector geometry") from exc
    if dimension <= 0 or count < 0:
        raise IndexIncompatibleError("Invalid vector geometry")
    expected = count * dimension * 4
    if len(blob) - offset != expected:
        raise IndexIncompatibleError(
            f"Vector block is {len(blob) - offset} bytes, expected {expected}"
        )
    vectors = np.frombuffer(blob, dtype="<f4", count=count * dimension, offset=offset)
    return header, vectors.reshape(count, dimension).astype("float32")
