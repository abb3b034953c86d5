"""
Failure classes raised while turning a request into a generated avatar.

Every class carries a ``kind`` string so callers can report the failure
category without inspecting exception types.
"""
from __future__ import annotations

from typing import Literal, Sequence


class AvatarGenerationError(Exception):
    """Base class for request-terminal generation failures."""

    kind = "generation"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AssetResolutionError(AvatarGenerationError):
    """An input image could not be read from its local or remote source."""

    kind = "asset_resolution"

    def __init__(self, message: str, *, role: str, source: Literal["local", "remote", "inline"]) -> None:
        super().__init__(message)
        self.role = role
        self.source = source


class TransportError(AvatarGenerationError):
    """Network-level failure while talking to the ComfyUI backend."""

    kind = "transport"

    def __init__(self, message: str, *, server_address: str, stage: str) -> None:
        super().__init__(f"{message} (server address: {server_address})")
        self.server_address = server_address
        self.stage = stage


class RemoteValidationError(AvatarGenerationError):
    """The backend rejected the bound workflow when it was submitted."""

    kind = "remote_validation"

    def __init__(self, message: str, *, node_key: str) -> None:
        super().__init__(message)
        self.node_key = node_key


class ExecutionError(AvatarGenerationError):
    """The backend reported a runtime failure while executing the job."""

    kind = "execution"

    def __init__(self, messages: Sequence[str]) -> None:
        self.messages = list(messages) or ["unknown execution error"]
        super().__init__(f"ComfyUI execution error: {'; '.join(self.messages)}")


class JobTimeoutError(AvatarGenerationError):
    """Polling used its whole attempt budget without reaching a terminal state."""

    kind = "timeout"

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class MissingOutputError(AvatarGenerationError):
    """The job finished but no recognised output node produced an image."""

    kind = "missing_output"


class GenerationCancelled(AvatarGenerationError):
    """The caller aborted polling before the job reached a terminal state."""

    kind = "cancelled"
