from __future__ import annotations

import base64

import httpx
import pytest

from conftest import (
    JOB_ID,
    JPEG_BYTES,
    PNG_BYTES,
    SERVER,
    FakeComfyServer,
    completed_history,
    failed_history,
    image_outputs,
    running_history,
)
from sakura_avatar.clients.comfyui import ComfyUIClient
from sakura_avatar.clients.prompt_writer import TemplatePromptWriter
from sakura_avatar.errors import MissingOutputError
from sakura_avatar.tasks.assets import AssetResolver
from sakura_avatar.tasks.data_url import decode_data_url
from sakura_avatar.tasks.generator import AvatarGenerator, build_prompt_writer
from sakura_avatar.tasks.request import GenerationRequest, UploadedPhoto

CAMERA = "data:image/jpeg;base64," + base64.b64encode(JPEG_BYTES).decode("ascii")


@pytest.fixture()
def make_generator(app_config):
    created = []

    def factory(server) -> AvatarGenerator:
        transport = server.transport() if isinstance(server, FakeComfyServer) else httpx.MockTransport(server)
        generator = AvatarGenerator(
            app_config,
            client=ComfyUIClient(app_config.comfyui, client_id="client-1", transport=transport),
            resolver=AssetResolver(app_config.assets.static_root, clock=lambda: 1700000000.0),
            prompt_writer=TemplatePromptWriter(),
            sleep=lambda seconds: None,
        )
        created.append(generator)
        return generator

    yield factory
    for generator in created:
        generator.close()


def _request(garment, backdrop, **overrides) -> dict:
    request = {"requester_id": "alice", "photo": CAMERA, "garment": garment, "backdrop": backdrop}
    request.update(overrides)
    return request


def test_successful_generation(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer(histories=[running_history(), completed_history(image_outputs())])
    generator = make_generator(server)

    result = generator.generate(_request(garment, backdrop, hint="smiling"))

    assert result.success is True
    assert result.error is None
    assert result.job_id == JOB_ID
    assert decode_data_url(result.image_url) == (PNG_BYTES, "image/png")
    assert result.prompt == TemplatePromptWriter().write_prompt(garment.description, backdrop.description, "smiling")

    assert server.uploaded == ["alice_cam_1700000000000.jpg", "k1.png", "b1.jpg"]
    assert server.history_calls == 2
    assert server.view_params["filename"] == "SakuraAvatar_00001_.png"

    submitted = server.submitted
    assert submitted["client_id"] == "client-1"
    graph = submitted["prompt"]
    assert graph["88"]["inputs"]["image"] == "alice_cam_1700000000000.jpg"
    assert graph["39"]["inputs"]["image"] == "k1.png"
    assert graph["47"]["inputs"]["image"] == "b1.jpg"
    assert graph["9"]["inputs"]["text"] == result.prompt
    assert graph["80"]["inputs"]["text"] == f"Generated Prompt: {result.prompt}"
    assert 0 <= graph["99"]["inputs"]["seed"] < 2**32
    assert graph["101"]["inputs"]["filename_prefix"].startswith("SakuraAvatar_alice_")


def test_template_is_untouched_between_runs(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer()
    generator = make_generator(server)
    before = generator.workflow.template.to_dict()

    generator.generate(_request(garment, backdrop))
    generator.generate(_request(garment, backdrop, photo=UploadedPhoto(data=PNG_BYTES, filename="me.png")))

    assert generator.workflow.template.to_dict() == before
    assert server.uploaded[3] == "me.png"


def test_invalid_request_is_reported(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer()
    generator = make_generator(server)

    result = generator.generate(_request(garment, backdrop, requester_id=""))

    assert result.success is False
    assert result.error_kind == "invalid_request"
    assert "requester_id" in result.error
    assert server.uploaded == []


def test_missing_style_asset_stops_before_upload(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer()
    generator = make_generator(server)
    missing = backdrop.model_copy(update={"local_path": "/background/b9.jpg"})

    result = generator.generate(_request(garment, missing))

    assert result.error_kind == "asset_resolution"
    assert result.error.startswith("Generation failed:")
    assert server.uploaded == []
    assert server.submitted is None


def test_node_errors_skip_polling(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer(
        prompt_body={
            "prompt_id": JOB_ID,
            "number": 1,
            "node_errors": {"9": {"class_type": "CLIPTextEncode", "errors": [{"message": "bad text"}]}},
        }
    )
    generator = make_generator(server)

    result = generator.generate(_request(garment, backdrop))

    assert result.error_kind == "remote_validation"
    assert "node 9" in result.error
    assert result.prompt is not None
    assert server.history_calls == 0


def test_execution_error_is_reported_with_job_id(make_generator, garment, backdrop) -> None:
    messages = [["execution_error", {"node_id": "90", "exception_message": "CUDA out of memory"}]]
    server = FakeComfyServer(histories=[failed_history(messages)])
    generator = make_generator(server)

    result = generator.generate(_request(garment, backdrop))

    assert result.error_kind == "execution"
    assert result.job_id == JOB_ID
    assert "CUDA out of memory" in result.error
    assert server.history_calls == 1


def test_timeout_reports_attempt_budget(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer(histories=[running_history()])
    generator = make_generator(server)

    result = generator.generate(_request(garment, backdrop))

    assert result.error_kind == "timeout"
    assert "3 attempts" in result.error
    assert server.history_calls == 3


def test_unreachable_backend_reports_address(make_generator, garment, backdrop) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    generator = make_generator(handler)

    result = generator.generate(_request(garment, backdrop))

    assert result.error_kind == "transport"
    assert SERVER in result.error


def test_run_raises_instead_of_reporting(make_generator, garment, backdrop) -> None:
    server = FakeComfyServer(histories=[completed_history({"55": {"images": []}})])
    generator = make_generator(server)
    request = GenerationRequest.model_validate(_request(garment, backdrop))

    with pytest.raises(MissingOutputError):
        generator.run(request)


def test_build_prompt_writer_defaults_to_template(app_config) -> None:
    assert isinstance(build_prompt_writer(app_config), TemplatePromptWriter)
