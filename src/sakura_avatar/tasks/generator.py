from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..clients.comfyui import ComfyUIClient
from ..clients.prompt_writer import AzurePromptWriter, PromptWriter, TemplatePromptWriter
from ..config import AppConfig
from ..errors import AvatarGenerationError
from ..types import GenerationResult, Job
from .assets import AssetResolver
from .extractor import ResultExtractor
from .poller import CompletionPoller
from .request import GenerationRequest
from .workflow import BindingRole, LoadedWorkflow, bind_graph, load_workflow, new_seed, output_prefix, role_bindings

logger = logging.getLogger(__name__)


def build_prompt_writer(config: AppConfig) -> PromptWriter:
    if config.enable_azure_prompt_writer and config.prompt_writer is not None:
        return AzurePromptWriter(config.prompt_writer)
    return TemplatePromptWriter()


class AvatarGenerator:
    """
    Runs one avatar generation end to end against a ComfyUI server.

    Resolve assets, upload them, write the prompt, bind the workflow, queue it,
    poll until terminal and fetch the chosen output. Instances hold only
    read-only state (template, client identifier, sessions) and can serve
    concurrent requests.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        workflow: LoadedWorkflow | None = None,
        client: ComfyUIClient | None = None,
        resolver: AssetResolver | None = None,
        prompt_writer: PromptWriter | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._config = config
        self._stack = ExitStack()
        self._workflow = workflow or load_workflow(config.comfyui.workflow_profile_path)
        self._client = client or self._stack.enter_context(ComfyUIClient(config.comfyui))
        self._resolver = resolver or self._stack.enter_context(
            AssetResolver(
                config.assets.static_root,
                timeout_seconds=config.comfyui.request_timeout_seconds,
            )
        )
        if prompt_writer is None:
            prompt_writer = build_prompt_writer(config)
            if isinstance(prompt_writer, AzurePromptWriter):
                self._stack.enter_context(prompt_writer)
        self._prompt_writer = prompt_writer
        self._poller = CompletionPoller(
            self._client,
            interval_seconds=config.comfyui.poll_interval_seconds,
            max_attempts=config.comfyui.max_poll_attempts,
            grace_attempts=config.comfyui.output_grace_attempts,
            server_address=self._client.server_address,
            sleep=sleep,
        )
        self._extractor = ResultExtractor(self._client, self._workflow.profile.output_providers)

    @property
    def client_id(self) -> str:
        return self._client.client_id

    @property
    def workflow(self) -> LoadedWorkflow:
        return self._workflow

    def close(self) -> None:
        self._stack.close()

    def generate(
        self,
        request: GenerationRequest | Mapping[str, Any],
        cancel: threading.Event | None = None,
    ) -> GenerationResult:
        """Run a request and report the outcome instead of raising generation errors."""
        try:
            accepted = (
                request if isinstance(request, GenerationRequest) else GenerationRequest.model_validate(request)
            )
        except ValidationError as exc:
            problems = ", ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            logger.error("Validation failed: %s", problems)
            return GenerationResult.failure("invalid_request", f"Invalid input: {problems}")

        state: dict[str, str] = {}
        try:
            return self.run(accepted, cancel, state=state)
        except AvatarGenerationError as exc:
            logger.error("Avatar generation failed (%s): %s", exc.kind, exc.message)
            return GenerationResult.failure(
                exc.kind,
                f"Generation failed: {exc.message}",
                prompt=state.get("prompt"),
                job_id=state.get("job_id"),
            )

    def run(
        self,
        request: GenerationRequest,
        cancel: threading.Event | None = None,
        *,
        state: dict[str, str] | None = None,
    ) -> GenerationResult:
        """Run a request, raising ``AvatarGenerationError`` subclasses on failure."""
        state = state if state is not None else {}
        logger.info(
            "Received generation request: user=%s garment=%s backdrop=%s photo=%s",
            request.requester_id,
            request.garment.id,
            request.backdrop.id,
            request.photo_kind(),
        )

        subject, garment, backdrop = self._resolver.resolve_request(request)
        subject_upload = self._client.upload_image(subject)
        garment_upload = self._client.upload_image(garment)
        backdrop_upload = self._client.upload_image(backdrop)

        prompt = self._prompt_writer.write_prompt(
            request.garment.description,
            request.backdrop.description,
            request.hint,
        )
        state["prompt"] = prompt
        logger.info("Generated prompt: %s", prompt)

        profile = self._workflow.profile
        values = {
            BindingRole.SUBJECT_IMAGE: subject_upload.workflow_name,
            BindingRole.GARMENT_IMAGE: garment_upload.workflow_name,
            BindingRole.BACKDROP_IMAGE: backdrop_upload.workflow_name,
            BindingRole.POSITIVE_PROMPT: prompt,
            BindingRole.PROMPT_DISPLAY: f"Generated Prompt: {prompt}",
            BindingRole.SEED: new_seed(),
            BindingRole.OUTPUT_PREFIX: output_prefix(profile.output_prefix, request.requester_id),
        }
        graph = bind_graph(self._workflow.template, role_bindings(profile, values))

        queued = self._client.queue_prompt(graph)
        state["job_id"] = queued.prompt_id
        job = Job(id=queued.prompt_id, submitted_graph=graph.to_dict(), queue_number=queued.number)

        history_entry = self._poller.wait(job, cancel)
        artifact, image_url = self._extractor.extract(history_entry)
        logger.info("Job %s produced %s", job.id, artifact.filename)

        return GenerationResult(success=True, image_url=image_url, prompt=prompt, job_id=job.id)

    def __enter__(self) -> "AvatarGenerator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()
