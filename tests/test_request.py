from __future__ import annotations

import pytest
from pydantic import ValidationError

from conftest import PNG_BYTES
from sakura_avatar.tasks.data_url import decode_data_url, encode_data_url, extension_for_mime, mime_from_filename
from sakura_avatar.tasks.request import MAX_HINT_LENGTH, GenerationRequest, UploadedPhoto


def test_photo_kinds(garment, backdrop) -> None:
    def kind(photo) -> str:
        return GenerationRequest(requester_id="alice", photo=photo, garment=garment, backdrop=backdrop).photo_kind()

    assert kind(UploadedPhoto(data=PNG_BYTES)) == "file"
    assert kind("data:image/png;base64,AAAA") == "data_url"
    assert kind("https://cdn.test/alice.png") == "url"


def test_rejects_unknown_photo_reference(garment, backdrop) -> None:
    with pytest.raises(ValidationError, match="http\\(s\\) URL"):
        GenerationRequest(requester_id="alice", photo="ftp://cdn.test/a.png", garment=garment, backdrop=backdrop)


def test_rejects_empty_upload() -> None:
    with pytest.raises(ValidationError, match="cannot be empty"):
        UploadedPhoto(data=b"")


def test_hint_is_trimmed_to_none_and_bounded(garment, backdrop) -> None:
    request = GenerationRequest(
        requester_id="alice", photo="https://cdn.test/a.png", garment=garment, backdrop=backdrop, hint="   "
    )
    assert request.hint is None

    with pytest.raises(ValidationError):
        GenerationRequest(
            requester_id="alice",
            photo="https://cdn.test/a.png",
            garment=garment,
            backdrop=backdrop,
            hint="x" * (MAX_HINT_LENGTH + 1),
        )


def test_data_url_helpers() -> None:
    url = encode_data_url(PNG_BYTES, "image/png")

    assert url.startswith("data:image/png;base64,")
    assert decode_data_url(url) == (PNG_BYTES, "image/png")
    assert decode_data_url("data:text/plain,hello%20there") == (b"hello there", "text/plain")
    with pytest.raises(ValueError):
        decode_data_url("https://cdn.test/a.png")


def test_mime_and_extension_mapping() -> None:
    assert mime_from_filename("Avatar_00001_.PNG") == "image/png"
    assert mime_from_filename("photo.jpeg") == "image/jpeg"
    assert mime_from_filename("no_extension") == "image/png"
    assert extension_for_mime("image/jpeg") == "jpg"
    assert extension_for_mime("image/webp") == "webp"
