"""GZip + Base64 transport encoding for signed DPS payloads."""

from __future__ import annotations

import base64
import gzip

from .errors import CompressionError

# Ceiling on the signed XML accepted by the national API.
MAX_XML_BYTES = 1024 * 1024


def compress_and_encode(xml: str, *, max_size: int = MAX_XML_BYTES) -> str:
    """Return the ``dpsXmlGZipB64`` representation of ``xml``."""

    raw = xml.encode("utf-8")
    if not raw.strip():
        raise CompressionError("XML vazio não pode ser enviado", code="payload_empty")
    if len(raw) > max_size:
        raise CompressionError(
            f"XML com {len(raw)} bytes excede o limite de {max_size} bytes",
            code="payload_too_large",
        )
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


def decode_and_decompress(payload: str) -> str:
    try:
        return gzip.decompress(base64.b64decode(payload, validate=True)).decode("utf-8")
    except (ValueError, OSError, EOFError) as exc:
        raise CompressionError("Conteúdo GZip/Base64 inválido") from exc


__all__ = [
    "MAX_XML_BYTES",
    "compress_and_encode",
    "decode_and_decompress",
]
