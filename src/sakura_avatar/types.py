from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

AssetRole = Literal["subject", "garment", "backdrop"]
ImageNamespace = Literal["output", "input", "temp"]


@dataclass(slots=True, frozen=True)
class ResolvedBinaryAsset:
    """An image ready to be uploaded to the backend for one logical role."""

    role: AssetRole
    data: bytes
    mime_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True, frozen=True)
class UploadedImage:
    """Server-side location of an uploaded image as reported by ``/upload/image``."""

    name: str
    subfolder: str = ""
    type: str = "input"

    @property
    def workflow_name(self) -> str:
        """Name to place into a LoadImage node input."""
        return f"{self.subfolder}/{self.name}" if self.subfolder else self.name


@dataclass(slots=True)
class OutputArtifact:
    """An image produced by one workflow node; bytes are fetched on demand."""

    filename: str
    subfolder: str = ""
    namespace: ImageNamespace = "output"
    node_key: str | None = None
    raw_bytes: bytes | None = None

    @classmethod
    def from_descriptor(cls, descriptor: Mapping[str, Any], node_key: str | None = None) -> "OutputArtifact":
        namespace = str(descriptor.get("type") or "output")
        if namespace not in {"output", "input", "temp"}:
            namespace = "output"
        return cls(
            filename=str(descriptor.get("filename") or ""),
            subfolder=str(descriptor.get("subfolder") or ""),
            namespace=namespace,  # type: ignore[arg-type]
            node_key=node_key,
        )


class JobStatus(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in {JobStatus.SUBMITTED, JobStatus.POLLING}


@dataclass(slots=True)
class Job:
    """A submitted workflow tracked for the lifetime of a single request."""

    id: str
    submitted_graph: Mapping[str, Any]
    status: JobStatus = JobStatus.SUBMITTED
    queue_number: int | None = None
    attempts: int = 0
    history: Mapping[str, Any] | None = None
    outputs: list[OutputArtifact] = field(default_factory=list)


@dataclass(slots=True)
class GenerationResult:
    """Outcome handed back to the caller of the generator."""

    success: bool
    image_url: str | None = None
    prompt: str | None = None
    job_id: str | None = None
    error_kind: str | None = None
    error: str | None = None

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str,
        *,
        prompt: str | None = None,
        job_id: str | None = None,
    ) -> "GenerationResult":
        return cls(success=False, error_kind=kind, error=message, prompt=prompt, job_id=job_id)
