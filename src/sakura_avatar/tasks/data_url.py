from __future__ import annotations

import base64
import binascii
import mimetypes
from urllib.parse import unquote_to_bytes

DEFAULT_IMAGE_MIME = "image/png"

_EXTENSION_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
}


def mime_from_filename(filename: str, default: str = DEFAULT_IMAGE_MIME) -> str:
    """Infer an image MIME type from a file extension."""
    lowered = filename.lower()
    for suffix, mime in _EXTENSION_MIME.items():
        if lowered.endswith(suffix):
            return mime
    guessed, _ = mimetypes.guess_type(lowered)
    if guessed and guessed.startswith("image/"):
        return guessed
    return default


def extension_for_mime(mime_type: str) -> str:
    subtype = mime_type.split("/", 1)[-1].lower()
    return {"jpeg": "jpg", "svg+xml": "svg"}.get(subtype, subtype) or "png"


def encode_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> tuple[bytes, str]:
    """
    Decode a ``data:`` URL into ``(bytes, mime_type)``.

    Raises ``ValueError`` for anything that is not a well-formed data URL.
    """
    header, separator, payload = url.strip().partition(",")
    if not header.startswith("data:") or not separator:
        raise ValueError("not a data URL")

    parts = header[len("data:"):].split(";")
    mime_type = parts[0].strip().lower() or "text/plain"
    if "base64" in (part.strip().lower() for part in parts[1:]):
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid base64 payload: {exc}") from exc
    else:
        data = unquote_to_bytes(payload)
    return data, mime_type
