from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence

from ..errors import MissingOutputError
from ..types import OutputArtifact
from .data_url import encode_data_url, mime_from_filename
from .workflow import OutputProvider

logger = logging.getLogger(__name__)


class ImageSource(Protocol):
    def get_image(self, artifact: OutputArtifact) -> bytes:
        ...


def select_output(history_entry: Mapping[str, Any], providers: Sequence[OutputProvider]) -> OutputArtifact:
    """
    Pick the authoritative output image from a completed history entry.

    Providers are tried in order; the first node with at least one image
    descriptor wins and its first image is returned.
    """
    outputs = history_entry.get("outputs") or {}
    for provider in providers:
        node_output = outputs.get(provider.node)
        if not isinstance(node_output, Mapping):
            continue
        images = [image for image in node_output.get("images") or [] if isinstance(image, Mapping)]
        if images:
            artifact = OutputArtifact.from_descriptor(images[0], node_key=provider.node)
            logger.info(
                "Using %s output from node %s: %s", provider.role, provider.node, artifact.filename
            )
            return artifact

    candidates = ", ".join(f"{provider.role} (node {provider.node})" for provider in providers)
    logger.error("No output image among %s; history outputs: %s", candidates, list(outputs))
    raise MissingOutputError(
        f"Could not find an output image in the job history. Checked {candidates or 'no output nodes'}."
    )


class ResultExtractor:
    """Fetches the chosen output image and encodes it for delivery as a data URL."""

    def __init__(self, source: ImageSource, providers: Sequence[OutputProvider]) -> None:
        self._source = source
        self._providers = list(providers)

    def extract(self, history_entry: Mapping[str, Any]) -> tuple[OutputArtifact, str]:
        artifact = select_output(history_entry, self._providers)
        artifact.raw_bytes = self._source.get_image(artifact)
        if not artifact.raw_bytes:
            raise MissingOutputError(f"Output image {artifact.filename} was empty.")
        mime_type = mime_from_filename(artifact.filename)
        logger.info("Fetched %s (%d bytes, %s)", artifact.filename, len(artifact.raw_bytes), mime_type)
        return artifact, encode_data_url(artifact.raw_bytes, mime_type)
