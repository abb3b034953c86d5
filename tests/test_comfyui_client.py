from __future__ import annotations

import httpx
import pytest

from conftest import JOB_ID, PNG_BYTES, SERVER, FakeComfyServer
from sakura_avatar.clients.comfyui import PROMPT_NODE_KEY, ComfyUIClient, first_node_error
from sakura_avatar.errors import RemoteValidationError, TransportError
from sakura_avatar.tasks.workflow import JobGraph
from sakura_avatar.types import OutputArtifact, ResolvedBinaryAsset

GRAPH = JobGraph.from_dict({"9": {"class_type": "CLIPTextEncode", "inputs": {"text": "hello"}}})
NODE_ERRORS = {
    "9": {
        "class_type": "CLIPTextEncode",
        "errors": [{"message": "Required input is missing", "details": "clip"}],
    }
}


def _client(comfy_config, handler) -> ComfyUIClient:
    return ComfyUIClient(comfy_config, client_id="client-1", transport=httpx.MockTransport(handler))


def test_upload_image_posts_multipart_form(comfy_config) -> None:
    server = FakeComfyServer()
    asset = ResolvedBinaryAsset(role="garment", data=PNG_BYTES, mime_type="image/png", filename="k1.png")

    with _client(comfy_config, server) as client:
        uploaded = client.upload_image(asset)

    assert uploaded.name == "k1.png"
    assert uploaded.workflow_name == "k1.png"
    form = server.upload_forms[0]
    assert b'name="image"; filename="k1.png"' in form
    assert b'name="type"\r\n\r\ninput' in form
    assert b'name="overwrite"\r\n\r\ntrue' in form


def test_upload_into_subfolder_uses_prefixed_name(comfy_config) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"name": "k1.png", "subfolder": "avatars", "type": "input"})

    asset = ResolvedBinaryAsset(role="garment", data=PNG_BYTES, mime_type="image/png", filename="k1.png")
    with _client(comfy_config, handler) as client:
        assert client.upload_image(asset).workflow_name == "avatars/k1.png"


def test_queue_prompt_with_empty_node_errors_is_accepted(comfy_config) -> None:
    server = FakeComfyServer()

    with _client(comfy_config, server) as client:
        queued = client.queue_prompt(GRAPH)

    assert queued.prompt_id == JOB_ID
    assert queued.number == 4
    assert server.submitted == {"prompt": GRAPH.to_dict(), "client_id": "client-1"}


def test_queue_prompt_node_errors_in_success_body(comfy_config) -> None:
    server = FakeComfyServer(prompt_body={"prompt_id": JOB_ID, "number": 1, "node_errors": NODE_ERRORS})

    with _client(comfy_config, server) as client:
        with pytest.raises(RemoteValidationError) as excinfo:
            client.queue_prompt(GRAPH)

    assert excinfo.value.node_key == "9"
    assert "node 9 (CLIPTextEncode)" in excinfo.value.message
    assert "Required input is missing: clip" in excinfo.value.message


def test_queue_prompt_rejected_with_400(comfy_config) -> None:
    server = FakeComfyServer(
        prompt_status=400,
        prompt_body={"error": {"type": "prompt_outputs_failed_validation"}, "node_errors": NODE_ERRORS},
    )

    with _client(comfy_config, server) as client:
        with pytest.raises(RemoteValidationError) as excinfo:
            client.queue_prompt(GRAPH)

    assert excinfo.value.kind == "remote_validation"
    assert excinfo.value.node_key == "9"


def test_queue_prompt_rejected_without_node_errors(comfy_config) -> None:
    server = FakeComfyServer(
        prompt_status=400,
        prompt_body={
            "error": {"type": "prompt_no_outputs", "message": "Prompt has no outputs", "details": ""},
            "node_errors": {},
        },
    )

    with _client(comfy_config, server) as client:
        with pytest.raises(RemoteValidationError) as excinfo:
            client.queue_prompt(GRAPH)

    assert excinfo.value.kind == "remote_validation"
    assert excinfo.value.node_key == PROMPT_NODE_KEY
    assert excinfo.value.message == "ComfyUI workflow validation failed: Prompt has no outputs"


def test_queue_prompt_tolerates_odd_queue_number(comfy_config) -> None:
    server = FakeComfyServer(prompt_body={"prompt_id": JOB_ID, "number": "soon", "node_errors": {}})

    with _client(comfy_config, server) as client:
        queued = client.queue_prompt(GRAPH)

    assert queued.prompt_id == JOB_ID
    assert queued.number is None


def test_queue_prompt_server_error_includes_address(comfy_config) -> None:
    server = FakeComfyServer(prompt_status=500, prompt_body={"error": "boom"})

    with _client(comfy_config, server) as client:
        with pytest.raises(TransportError) as excinfo:
            client.queue_prompt(GRAPH)

    assert "HTTP 500" in excinfo.value.message
    assert SERVER in excinfo.value.message
    assert excinfo.value.stage == "submit"


def test_queue_prompt_without_prompt_id(comfy_config) -> None:
    server = FakeComfyServer(prompt_body={"number": 1})

    with _client(comfy_config, server) as client:
        with pytest.raises(TransportError, match="prompt_id"):
            client.queue_prompt(GRAPH)


def test_unreachable_server_is_transport_error(comfy_config) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(comfy_config, handler) as client:
        with pytest.raises(TransportError) as excinfo:
            client.get_history(JOB_ID)

    assert excinfo.value.stage == "poll"
    assert excinfo.value.server_address == SERVER
    assert SERVER in str(excinfo.value)


def test_history_and_image_download(comfy_config) -> None:
    server = FakeComfyServer()
    artifact = OutputArtifact(filename="SakuraAvatar_00001_.png", subfolder="", namespace="output")

    with _client(comfy_config, server) as client:
        history = client.get_history(JOB_ID)
        data = client.get_image(artifact)

    assert history[JOB_ID]["status"]["completed"] is True
    assert data == PNG_BYTES
    assert server.view_params == {"filename": "SakuraAvatar_00001_.png", "subfolder": "", "type": "output"}


def test_client_id_is_generated_once_per_client(comfy_config) -> None:
    first = ComfyUIClient(comfy_config)
    second = ComfyUIClient(comfy_config)
    try:
        assert first.client_id != second.client_id
        assert len(first.client_id) == 32
    finally:
        first.close()
        second.close()


def test_first_node_error_without_details() -> None:
    error = first_node_error({"47": {"errors": []}})

    assert error.node_key == "47"
    assert error.message == "ComfyUI workflow validation failed at node 47: unknown node error"
