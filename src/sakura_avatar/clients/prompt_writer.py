from __future__ import annotations

import logging
from typing import Protocol

import httpx

from ..config import PromptWriterConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an AI assistant that writes creative prompts for avatar image generation."


class PromptWriter(Protocol):
    """Turns the two style descriptions and an optional hint into one prompt sentence."""

    def write_prompt(self, garment: str, backdrop: str, hint: str | None = None) -> str:
        ...


class TemplatePromptWriter:
    """Deterministic prompt writer used when no language model is configured."""

    def write_prompt(self, garment: str, backdrop: str, hint: str | None = None) -> str:
        sentence = (
            f"A photorealistic portrait of the person wearing {garment.strip()}, "
            f"standing in {backdrop.strip()}, with harmonious colors and soft cinematic lighting"
        )
        if hint and hint.strip():
            sentence = f"{sentence}, {hint.strip().rstrip('.')}"
        return f"{sentence}."


class AzurePromptWriter:
    """Writes prompts with an Azure OpenAI chat deployment, falling back to a template."""

    def __init__(
        self,
        config: PromptWriterConfig,
        *,
        fallback: PromptWriter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._fallback = fallback or TemplatePromptWriter()
        self._session = httpx.Client(
            base_url=config.endpoint.rstrip("/"),
            headers={"api-key": config.api_key, "Content-Type": "application/json"},
            timeout=httpx.Timeout(60.0),
            transport=transport,
        )
        self._path = f"/openai/deployments/{config.deployment}/chat/completions"

    def close(self) -> None:
        self._session.close()

    @staticmethod
    def _instructions(garment: str, backdrop: str, hint: str | None) -> str:
        lines = [
            f"The user has selected a kimono with the following description: {garment}.",
            f"The user has selected a background with the following description: {backdrop}.",
        ]
        if hint:
            lines.append(f"The user has provided the following description: {hint}.")
            lines.append("Please incorporate this into the prompt to customize the avatar.")
        lines.append(
            "Generate a detailed and imaginative prompt that combines the essence of the kimono "
            "and background into a unique avatar. Consider color schemes, artistic style and mood, "
            "and describe how the kimono and background relate. "
            "The prompt must be a single sentence. Respond with the sentence only."
        )
        return "\n".join(lines)

    def write_prompt(self, garment: str, backdrop: str, hint: str | None = None) -> str:
        payload = {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._instructions(garment, backdrop, hint)},
            ],
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
        }
        try:
            response = self._session.post(
                self._path,
                params={"api-version": self._config.api_version},
                json=payload,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Azure prompt writer failed (%s); using template prompt", exc)
            return self._fallback.write_prompt(garment, backdrop, hint)

        sentence = " ".join(str(content).split()).strip().strip('"')
        if not sentence:
            logger.warning("Azure prompt writer returned an empty prompt; using template prompt")
            return self._fallback.write_prompt(garment, backdrop, hint)
        return sentence

    def __enter__(self) -> "AzurePromptWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()
