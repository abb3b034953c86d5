from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..catalog import StyleAsset

MAX_HINT_LENGTH = 150


class UploadedPhoto(BaseModel):
    """A photo received as raw bytes, from a file upload or a camera capture."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., description="Raw image bytes")
    filename: str = Field(default="photo.png", description="Client supplied file name")
    content_type: str | None = Field(default=None, description="Client supplied MIME type, if any")

    @field_validator("data")
    @classmethod
    def _not_empty(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("Photo file cannot be empty.")
        return value


PhotoInput = Union[UploadedPhoto, str]


class GenerationRequest(BaseModel):
    """A user's photo plus the garment and backdrop they selected."""

    model_config = ConfigDict(frozen=True)

    requester_id: str = Field(..., min_length=1, description="Username the avatar is generated for")
    photo: PhotoInput = Field(..., description="Uploaded bytes, an http(s) URL, or a data:image/ URL")
    garment: StyleAsset
    backdrop: StyleAsset
    hint: str | None = Field(default=None, max_length=MAX_HINT_LENGTH)

    @field_validator("photo")
    @classmethod
    def _check_photo_reference(cls, value: PhotoInput) -> PhotoInput:
        if isinstance(value, str):
            if value.startswith("data:image/"):
                return value
            if value.startswith(("http://", "https://")):
                return value
            raise ValueError("Photo must be an http(s) URL or a data:image/ URL.")
        return value

    @field_validator("hint")
    @classmethod
    def _blank_hint_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def photo_kind(self) -> str:
        if isinstance(self.photo, UploadedPhoto):
            return "file"
        return "data_url" if self.photo.startswith("data:") else "url"
