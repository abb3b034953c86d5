from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Protocol

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..errors import ExecutionError, GenerationCancelled, JobTimeoutError, MissingOutputError
from ..types import Job, JobStatus, OutputArtifact

logger = logging.getLogger(__name__)


class HistorySource(Protocol):
    def get_history(self, prompt_id: str) -> Mapping[str, Any]:
        ...


def execution_messages(messages: Any) -> List[str]:
    """
    Flatten ComfyUI ``status.messages`` (``[[type, data], ...]``) into readable strings.

    Every entry is kept, in order: its ``message``, else its
    ``exception_message`` prefixed with the node, else the JSON payload.
    """
    if not isinstance(messages, list):
        return []

    texts: List[str] = []
    for entry in messages:
        if not isinstance(entry, (list, tuple)) or not entry:
            continue
        data = entry[1] if len(entry) > 1 else None
        if isinstance(data, Mapping):
            if data.get("message"):
                texts.append(str(data["message"]))
                continue
            if data.get("exception_message"):
                node = data.get("node_id")
                text = str(data["exception_message"])
                texts.append(f"node {node}: {text}" if node else text)
                continue
        texts.append(json.dumps(data, default=str) if data is not None else str(entry[0]))
    return texts


def history_artifacts(outputs: Mapping[str, Any]) -> List[OutputArtifact]:
    artifacts: List[OutputArtifact] = []
    for node_key, node_output in outputs.items():
        if not isinstance(node_output, Mapping):
            continue
        for descriptor in node_output.get("images") or []:
            if isinstance(descriptor, Mapping) and descriptor.get("filename"):
                artifacts.append(OutputArtifact.from_descriptor(descriptor, node_key=str(node_key)))
    return artifacts


@dataclass(slots=True)
class _PollRun:
    """Per-job polling bookkeeping; ``grace_used`` is set once outputs are late."""

    job: Job
    cancel: threading.Event
    grace_used: int | None = None


class CompletionPoller:
    """
    Waits for a submitted job by querying ``/history/{id}`` at a fixed cadence.

    ``Submitted -> Polling -> Completed | Failed | TimedOut | Cancelled``. Each
    iteration waits ``interval_seconds`` and then performs exactly one history
    query. A job that reports completion before its outputs are written gets a
    bounded grace window of extra checks. The caller can abort between
    iterations through a ``threading.Event``.
    """

    def __init__(
        self,
        client: HistorySource,
        *,
        interval_seconds: float = 2.0,
        max_attempts: int = 60,
        grace_attempts: int = 5,
        server_address: str = "",
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._grace_attempts = max(0, grace_attempts)
        self._server_address = server_address
        self._sleep = sleep

    def wait(self, job: Job, cancel: threading.Event | None = None) -> Mapping[str, Any]:
        """Block until ``job`` reaches a terminal state and return its history entry."""
        run = _PollRun(job=job, cancel=cancel or threading.Event())
        job.status = JobStatus.POLLING

        def pause(seconds: float) -> None:
            if self._sleep is not None:
                self._sleep(seconds)
            else:
                run.cancel.wait(seconds)

        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._interval),
            retry=retry_if_result(lambda status: status is JobStatus.POLLING),
            sleep=pause,
        )

        pause(self._interval)
        try:
            retrying(self._check, run)
        except RetryError:
            if run.grace_used is not None:
                job.status = JobStatus.FAILED
                raise MissingOutputError(
                    f"Job {job.id} completed but no output data was received from ComfyUI "
                    f"within {job.attempts} checks."
                ) from None
            job.status = JobStatus.TIMED_OUT
            total = self._max_attempts * self._interval
            raise JobTimeoutError(
                f"Generation timed out after {self._max_attempts} attempts ({total:g}s); "
                f"check the ComfyUI server at {self._server_address or 'the configured address'}.",
                attempts=self._max_attempts,
            ) from None

        return job.history or {}

    def _check(self, run: _PollRun) -> JobStatus:
        job = run.job
        if run.cancel.is_set():
            job.status = JobStatus.CANCELLED
            raise GenerationCancelled(f"Polling for job {job.id} was cancelled after {job.attempts} checks.")

        job.attempts += 1
        logger.info("Polling for result... attempt %d/%d", job.attempts, self._max_attempts)
        history = self._client.get_history(job.id)
        entry = history.get(job.id)
        if not isinstance(entry, Mapping):
            run.grace_used = None
            return JobStatus.POLLING

        status = entry.get("status") or {}
        if status.get("status_str") == "error":
            job.status = JobStatus.FAILED
            error = ExecutionError(execution_messages(status.get("messages")))
            logger.error("Job %s failed: %s", job.id, error.message)
            raise error

        if not status.get("completed"):
            run.grace_used = None
            return JobStatus.POLLING

        outputs = entry.get("outputs") or {}
        if outputs:
            job.history = entry
            job.outputs = history_artifacts(outputs)
            job.status = JobStatus.COMPLETED
            logger.info("Job %s completed after %d checks", job.id, job.attempts)
            return JobStatus.COMPLETED

        run.grace_used = 0 if run.grace_used is None else run.grace_used + 1
        if run.grace_used >= self._grace_attempts:
            job.status = JobStatus.FAILED
            raise MissingOutputError(
                f"Job {job.id} completed but no output data was received from ComfyUI."
            )
        logger.warning(
            "Job %s completed but no outputs yet; waiting (%d/%d extra checks)",
            job.id,
            run.grace_used + 1,
            self._grace_attempts,
        )
        return JobStatus.POLLING
