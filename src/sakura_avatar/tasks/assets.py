from __future__ import annotations

import io
import logging
import time
from pathlib import Path
from typing import Callable, List

import httpx
from PIL import Image, UnidentifiedImageError

from ..catalog import StyleAsset
from ..errors import AssetResolutionError
from ..types import AssetRole, ResolvedBinaryAsset
from .data_url import decode_data_url, extension_for_mime, mime_from_filename
from .request import GenerationRequest, PhotoInput, UploadedPhoto

logger = logging.getLogger(__name__)

_PIL_FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


def sniff_image_mime(data: bytes) -> str | None:
    """Identify common image formats from their leading bytes, asking Pillow otherwise."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data[:2] == b"BM":
        return "image/bmp"
    try:
        with Image.open(io.BytesIO(data)) as image:
            return _PIL_FORMAT_MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        return None


class AssetResolver:
    """
    Turns photo and style inputs into uploadable image blobs.

    Remote photos are fetched without caching and never retried; style assets
    are read from the local static store. Failures raise
    ``AssetResolutionError`` tagged with where the read happened.
    """

    def __init__(
        self,
        static_root: str | Path,
        *,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._static_root = Path(static_root)
        self._clock = clock
        self._session = httpx.Client(
            headers={"Cache-Control": "no-store"},
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._session.close()

    def _millis(self) -> int:
        return int(self._clock() * 1000)

    def resolve_request(self, request: GenerationRequest) -> List[ResolvedBinaryAsset]:
        """Resolve the subject photo, garment and backdrop, in that order."""
        return [
            self.resolve_photo(request.photo, request.requester_id),
            self.resolve_style(request.garment, "garment"),
            self.resolve_style(request.backdrop, "backdrop"),
        ]

    def resolve_photo(self, photo: PhotoInput, requester_id: str) -> ResolvedBinaryAsset:
        if isinstance(photo, UploadedPhoto):
            return self._from_upload(photo)
        if photo.startswith("data:"):
            return self._from_data_url(photo, requester_id)
        if photo.startswith(("http://", "https://")):
            return self._from_url(photo, requester_id)
        raise AssetResolutionError(
            "Invalid photo reference. Expected a data URL or an HTTP(S) URL.",
            role="subject",
            source="inline",
        )

    def resolve_style(self, asset: StyleAsset, role: AssetRole) -> ResolvedBinaryAsset:
        root = self._static_root.resolve()
        path = (root / asset.local_path.lstrip("/")).resolve()
        if root not in path.parents:
            raise AssetResolutionError(
                f"Could not read {role} image '{asset.local_path}': path escapes the static asset store",
                role=role,
                source="local",
            )
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.error("Failed to read %s file %s: %s", role, path, exc)
            raise AssetResolutionError(
                f"Could not read {role} image '{asset.local_path}' from the local asset store: {exc.strerror or exc}",
                role=role,
                source="local",
            ) from exc
        if not data:
            raise AssetResolutionError(
                f"{role.capitalize()} image '{asset.local_path}' is empty",
                role=role,
                source="local",
            )
        mime_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        logger.info("Read %s image %s (%d bytes)", role, asset.local_path, len(data))
        return ResolvedBinaryAsset(role=role, data=data, mime_type=mime_type, filename=path.name)

    def _from_upload(self, photo: UploadedPhoto) -> ResolvedBinaryAsset:
        mime_type = photo.content_type or sniff_image_mime(photo.data) or mime_from_filename(photo.filename)
        logger.info("Using uploaded photo %s (%s)", photo.filename, mime_type)
        return ResolvedBinaryAsset(role="subject", data=photo.data, mime_type=mime_type, filename=photo.filename)

    def _from_data_url(self, url: str, requester_id: str) -> ResolvedBinaryAsset:
        try:
            data, mime_type = decode_data_url(url)
        except ValueError as exc:
            raise AssetResolutionError(
                f"Could not decode camera capture: {exc}", role="subject", source="inline"
            ) from exc
        if not data:
            raise AssetResolutionError("Camera capture is empty", role="subject", source="inline")
        filename = f"{requester_id}_cam_{self._millis()}.{extension_for_mime(mime_type)}"
        logger.info("Converted camera capture to %s", filename)
        return ResolvedBinaryAsset(role="subject", data=data, mime_type=mime_type, filename=filename)

    def _from_url(self, url: str, requester_id: str) -> ResolvedBinaryAsset:
        try:
            response = self._session.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise AssetResolutionError(
                f"Could not fetch photo from {url}: HTTP {exc.response.status_code}",
                role="subject",
                source="remote",
            ) from exc
        except httpx.HTTPError as exc:
            raise AssetResolutionError(
                f"Could not fetch photo from {url}: {exc}", role="subject", source="remote"
            ) from exc

        data = response.content
        if not data:
            raise AssetResolutionError(f"Photo at {url} is empty", role="subject", source="remote")

        path_name = httpx.URL(url).path.rsplit("/", 1)[-1]
        filename = path_name or f"{requester_id}_url_{self._millis()}.png"
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type.startswith("image/"):
            mime_type = content_type
        elif filename.lower().endswith(".png"):
            mime_type = "image/png"
        elif filename.lower().endswith((".jpg", ".jpeg")):
            mime_type = "image/jpeg"
        else:
            mime_type = "image/webp"
        logger.info("Fetched photo URL as %s (%d bytes)", filename, len(data))
        return ResolvedBinaryAsset(role="subject", data=data, mime_type=mime_type, filename=filename)

    def __enter__(self) -> "AssetResolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()
