from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
GARMENT_DIR = "Kimono"
BACKDROP_DIR = "background"


class StyleAsset(BaseModel):
    """A selectable garment or backdrop image with the text used to steer generation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable identifier used by callers to select the asset")
    display_name: str = Field(..., description="Human readable label")
    local_path: str = Field(..., description="Path of the image inside the static asset store")
    description: str = Field(..., description="Text description handed to the prompt writer")
    ai_hint: str = Field(default="", description="Short keyword hint describing the image")


class StyleCatalog(BaseModel):
    """Fixed catalog of garments and backdrops offered to users."""

    garments: List[StyleAsset] = Field(default_factory=list)
    backdrops: List[StyleAsset] = Field(default_factory=list)

    def garment(self, asset_id: str) -> StyleAsset:
        return self._find(self.garments, asset_id, "garment")

    def backdrop(self, asset_id: str) -> StyleAsset:
        return self._find(self.backdrops, asset_id, "backdrop")

    @staticmethod
    def _find(assets: Sequence[StyleAsset], asset_id: str, kind: str) -> StyleAsset:
        for asset in assets:
            if asset.id == asset_id:
                return asset
        known = ", ".join(asset.id for asset in assets) or "none"
        raise KeyError(f"Unknown {kind} '{asset_id}'. Known {kind}s: {known}")


def load_style_catalog(path: str | Path) -> StyleCatalog:
    """Load and validate a style catalog JSON document."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)

    try:
        return StyleCatalog.model_validate(data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid style catalog at {path}") from exc


def _iter_images(directory: Path) -> Iterable[Path]:
    return sorted(
        path for path in directory.iterdir() if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    )


def scan_style_directory(static_root: str | Path, subdir: str, *, kind: str) -> List[StyleAsset]:
    """
    Build style assets from the images found in ``static_root/subdir``.

    Used when no curated catalog entry exists for a directory of images; the
    description falls back to the file stem so prompts still carry some signal.
    """
    directory = Path(static_root) / subdir.strip("/")
    if not directory.is_dir():
        logger.warning("Style directory %s does not exist; no %s assets found", directory, kind)
        return []

    assets: List[StyleAsset] = []
    for image_path in _iter_images(directory):
        label = image_path.stem.replace("_", " ").replace("-", " ").strip()
        assets.append(
            StyleAsset(
                id=image_path.stem,
                display_name=label.title(),
                local_path=f"/{subdir.strip('/')}/{image_path.name}",
                description=f"{label} {kind}",
                ai_hint=f"{label} {kind}",
            )
        )
    return assets


def build_style_catalog(catalog_path: str | Path, static_root: str | Path) -> StyleCatalog:
    """
    Load the curated catalog, scanning the static store for any section it lacks.

    A missing catalog file means both sections come from
    ``static_root/Kimono`` and ``static_root/background``.
    """
    path = Path(catalog_path)
    if path.is_file():
        catalog = load_style_catalog(path)
    else:
        logger.warning("Style catalog %s not found; scanning %s", path, static_root)
        catalog = StyleCatalog()

    garments = catalog.garments or scan_style_directory(static_root, GARMENT_DIR, kind="kimono")
    backdrops = catalog.backdrops or scan_style_directory(static_root, BACKDROP_DIR, kind="background")
    return StyleCatalog(garments=garments, backdrops=backdrops)


def list_user_photos(photo_dir: str | Path, username: str) -> List[Path]:
    """Return previously uploaded photos named ``<username>_*`` in listing order."""
    if not username:
        logger.warning("list_user_photos called without a username")
        return []

    directory = Path(photo_dir)
    if not directory.is_dir():
        return []

    prefix = f"{username}_"
    return [path for path in _iter_images(directory) if path.name.startswith(prefix)]


def default_user_photo(photos: Sequence[Path]) -> Path | None:
    """
    Pick the photo used when the user has not chosen one.

    The first entry in listing order wins. The ordering carries no meaning; it
    only keeps the choice stable between calls.
    """
    return photos[0] if photos else None
