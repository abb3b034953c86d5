from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest

from sakura_avatar.catalog import StyleAsset
from sakura_avatar.config import AppConfig, AssetStoreConfig, ComfyUIConfig

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
SERVER = "http://comfy.test:8188"
JOB_ID = "job-123"

_FILENAME = re.compile(rb'filename="([^"]+)"')


def running_history(job_id: str = JOB_ID) -> Dict[str, Any]:
    return {job_id: {"status": {"status_str": "running", "completed": False}, "outputs": {}}}


def completed_history(outputs: Dict[str, Any], job_id: str = JOB_ID) -> Dict[str, Any]:
    return {job_id: {"status": {"status_str": "success", "completed": True}, "outputs": outputs}}


def failed_history(messages: List[Any], job_id: str = JOB_ID) -> Dict[str, Any]:
    return {
        job_id: {
            "status": {"status_str": "error", "completed": False, "messages": messages},
            "outputs": {},
        }
    }


def image_outputs(node: str = "101", filename: str = "SakuraAvatar_00001_.png") -> Dict[str, Any]:
    return {node: {"images": [{"filename": filename, "subfolder": "", "type": "output"}]}}


class FakeComfyServer:
    """In-process stand-in for the ComfyUI HTTP API, served through ``httpx.MockTransport``."""

    def __init__(
        self,
        *,
        histories: List[Dict[str, Any]] | None = None,
        prompt_status: int = 200,
        prompt_body: Dict[str, Any] | None = None,
        image: bytes = PNG_BYTES,
    ) -> None:
        self.histories = list(histories or [completed_history(image_outputs())])
        self.prompt_status = prompt_status
        self.prompt_body = prompt_body or {"prompt_id": JOB_ID, "number": 4, "node_errors": {}}
        self.image = image
        self.uploaded: List[str] = []
        self.upload_forms: List[bytes] = []
        self.submitted: Dict[str, Any] | None = None
        self.history_calls = 0
        self.view_params: Dict[str, str] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/upload/image":
            match = _FILENAME.search(request.content)
            name = match.group(1).decode() if match else "upload.png"
            self.uploaded.append(name)
            self.upload_forms.append(request.content)
            return httpx.Response(200, json={"name": name, "subfolder": "", "type": "input"})
        if path == "/prompt":
            self.submitted = json.loads(request.content)
            return httpx.Response(self.prompt_status, json=self.prompt_body)
        if path.startswith("/history/"):
            self.history_calls += 1
            index = min(self.history_calls, len(self.histories)) - 1
            return httpx.Response(200, json=self.histories[index])
        if path == "/view":
            self.view_params = dict(request.url.params)
            return httpx.Response(200, content=self.image)
        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture()
def static_root(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    (root / "Kimono").mkdir(parents=True)
    (root / "background").mkdir(parents=True)
    (root / "Kimono" / "k1.png").write_bytes(PNG_BYTES)
    (root / "background" / "b1.jpg").write_bytes(JPEG_BYTES)
    return root


@pytest.fixture()
def garment() -> StyleAsset:
    return StyleAsset(
        id="k1",
        display_name="Classic Pink Sakura",
        local_path="/Kimono/k1.png",
        description="a traditional pink kimono with a cherry blossom pattern",
        ai_hint="pink sakura kimono",
    )


@pytest.fixture()
def backdrop() -> StyleAsset:
    return StyleAsset(
        id="b1",
        display_name="Sakura Park Path",
        local_path="/background/b1.jpg",
        description="a quiet park path lined with blooming cherry trees",
        ai_hint="sakura park path",
    )


@pytest.fixture()
def comfy_config() -> ComfyUIConfig:
    return ComfyUIConfig(
        server_address=SERVER,
        poll_interval_seconds=0.5,
        max_poll_attempts=3,
        output_grace_attempts=2,
    )


@pytest.fixture()
def app_config(comfy_config: ComfyUIConfig, static_root: Path) -> AppConfig:
    return AppConfig(comfyui=comfy_config, assets=AssetStoreConfig(static_root=static_root))
