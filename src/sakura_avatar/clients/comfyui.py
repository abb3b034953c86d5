from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import httpx

from ..config import ComfyUIConfig
from ..errors import RemoteValidationError, TransportError
from ..tasks.workflow import JobGraph
from ..types import OutputArtifact, ResolvedBinaryAsset, UploadedImage

logger = logging.getLogger(__name__)

PROMPT_NODE_KEY = "prompt"


@dataclass(slots=True, frozen=True)
class QueuedPrompt:
    """Acknowledgement returned by ``POST /prompt``."""

    prompt_id: str
    number: int | None = None


def first_node_error(node_errors: Mapping[str, Any]) -> RemoteValidationError:
    """Build the error reported for the first node listed in a ``node_errors`` map."""
    node_key = next(iter(node_errors))
    details = node_errors[node_key]
    class_type = ""
    message = "unknown node error"
    if isinstance(details, Mapping):
        class_type = str(details.get("class_type") or "")
        errors = details.get("errors") or []
        if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
            first = errors[0]
            message = str(first.get("message") or message)
            if first.get("details"):
                message = f"{message}: {first['details']}"
    label = f"node {node_key} ({class_type})" if class_type else f"node {node_key}"
    return RemoteValidationError(f"ComfyUI workflow validation failed at {label}: {message}", node_key=node_key)


def prompt_error(error: Mapping[str, Any]) -> RemoteValidationError:
    """Build the error reported when the whole prompt is rejected without per-node errors."""
    message = str(error.get("message") or error.get("type") or "prompt rejected")
    if error.get("details"):
        message = f"{message}: {error['details']}"
    return RemoteValidationError(
        f"ComfyUI workflow validation failed: {message}", node_key=PROMPT_NODE_KEY
    )


def _queue_number(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ComfyUIClient:
    """Client for the ComfyUI HTTP API: image upload, prompt queueing, history and image download."""

    def __init__(
        self,
        config: ComfyUIConfig,
        *,
        client_id: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client_id = client_id or uuid.uuid4().hex
        self._session = httpx.Client(
            base_url=config.server_address,
            headers={"Accept": "application/json", "Cache-Control": "no-store"},
            timeout=httpx.Timeout(config.request_timeout_seconds),
            transport=transport,
        )

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def server_address(self) -> str:
        return self._config.server_address

    def close(self) -> None:
        self._session.close()

    def _send(self, stage: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._session.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"Timed out during {stage} talking to ComfyUI: {exc}",
                server_address=self.server_address,
                stage=stage,
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(
                f"Could not reach ComfyUI during {stage}: {exc}",
                server_address=self.server_address,
                stage=stage,
            ) from exc

    def _raise_for_status(self, stage: str, response: httpx.Response) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"ComfyUI {stage} failed with HTTP {response.status_code}: {response.text[:500]}",
                server_address=self.server_address,
                stage=stage,
            ) from exc

    def _json(self, stage: str, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(
                f"ComfyUI {stage} returned a non-JSON body",
                server_address=self.server_address,
                stage=stage,
            ) from exc
        if not isinstance(data, dict):
            raise TransportError(
                f"ComfyUI {stage} returned unexpected JSON: {type(data).__name__}",
                server_address=self.server_address,
                stage=stage,
            )
        return data

    def upload_image(
        self,
        asset: ResolvedBinaryAsset,
        *,
        namespace: str = "input",
        overwrite: bool = True,
    ) -> UploadedImage:
        """Upload one image and return the name the server stored it under."""
        response = self._send(
            "upload",
            "POST",
            "/upload/image",
            files={"image": (asset.filename, asset.data, asset.mime_type)},
            data={"type": namespace, "overwrite": str(overwrite).lower()},
        )
        self._raise_for_status("upload", response)
        data = self._json("upload", response)

        uploaded = UploadedImage(
            name=str(data.get("name") or asset.filename),
            subfolder=str(data.get("subfolder") or ""),
            type=str(data.get("type") or namespace),
        )
        logger.info("Uploaded %s image %s as %s", asset.role, asset.filename, uploaded.workflow_name)
        return uploaded

    def queue_prompt(self, graph: JobGraph | Mapping[str, Any]) -> QueuedPrompt:
        """
        Submit a workflow for execution.

        Raises ``RemoteValidationError`` when the server reports node errors,
        whether in a successful response or in a 400 rejection.
        """
        workflow = graph.to_dict() if isinstance(graph, JobGraph) else dict(graph)
        response = self._send(
            "submit",
            "POST",
            "/prompt",
            json={"prompt": workflow, "client_id": self._client_id},
        )

        if response.status_code == 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("node_errors"):
                logger.error("ComfyUI rejected workflow: %s", body["node_errors"])
                raise first_node_error(body["node_errors"])
            if isinstance(body, dict) and isinstance(body.get("error"), Mapping):
                logger.error("ComfyUI rejected workflow: %s", body["error"])
                raise prompt_error(body["error"])

        self._raise_for_status("submit", response)
        data = self._json("submit", response)

        node_errors = data.get("node_errors") or {}
        if node_errors:
            logger.error("ComfyUI node errors: %s", node_errors)
            raise first_node_error(node_errors)

        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise TransportError(
                f"ComfyUI did not return a prompt_id: {list(data.keys())}",
                server_address=self.server_address,
                stage="submit",
            )
        queued = QueuedPrompt(prompt_id=str(prompt_id), number=_queue_number(data.get("number")))
        logger.info("Queued prompt %s (queue number %s)", queued.prompt_id, queued.number)
        return queued

    def get_history(self, prompt_id: str) -> Dict[str, Any]:
        """Return the history map for ``prompt_id`` (empty while the job is queued)."""
        response = self._send("poll", "GET", f"/history/{prompt_id}")
        self._raise_for_status("poll", response)
        return self._json("poll", response)

    def get_image(self, artifact: OutputArtifact) -> bytes:
        """Download the bytes of a produced image."""
        response = self._send(
            "fetch",
            "GET",
            "/view",
            params={
                "filename": artifact.filename,
                "subfolder": artifact.subfolder,
                "type": artifact.namespace,
            },
        )
        self._raise_for_status("fetch", response)
        return response.content

    def __enter__(self) -> "ComfyUIClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()
