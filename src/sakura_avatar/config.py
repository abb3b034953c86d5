from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_PROFILE_PATH = PACKAGE_DIR / "data" / "kimono.profile.json"
DEFAULT_CATALOG_PATH = PACKAGE_DIR / "data" / "styles.json"
DEFAULT_SERVER_ADDRESS = "http://127.0.0.1:8188"


class ComfyUIConfig(BaseModel):
    """Settings required to reach the ComfyUI backend and track submitted jobs."""

    server_address: str = Field(
        default=DEFAULT_SERVER_ADDRESS,
        description="Base URL of the ComfyUI server (http or https)",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="Timeout applied to each individual HTTP call",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=30.0,
        description="Delay before each history query while waiting for a job",
    )
    max_poll_attempts: int = Field(
        default=60,
        ge=1,
        le=600,
        description="Maximum history queries before the job is considered timed out",
    )
    output_grace_attempts: int = Field(
        default=5,
        ge=0,
        le=60,
        description="Extra checks allowed when a job reports completion before its outputs",
    )
    workflow_profile_path: Path = Field(
        default=DEFAULT_PROFILE_PATH,
        description="Workflow profile describing the template and its role bindings",
    )

    @field_validator("server_address")
    @classmethod
    def _normalise_address(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"ComfyUI server address must start with http:// or https://, got '{value}'")
        return value.rstrip("/")


class AssetStoreConfig(BaseModel):
    """Locations of the static style assets and previously uploaded user photos."""

    static_root: Path = Field(
        default_factory=lambda: Path("public"),
        description="Root directory that catalog paths are resolved against",
    )
    catalog_path: Path = Field(
        default=DEFAULT_CATALOG_PATH,
        description="JSON catalog of selectable garments and backdrops",
    )
    user_photo_dir: Path | None = Field(
        default=None,
        description="Optional directory holding '<username>_*' photos from earlier sessions",
    )


class PromptWriterConfig(BaseModel):
    """Settings for the Azure OpenAI deployment that writes generation prompts."""

    endpoint: str = Field(..., description="Azure OpenAI endpoint URL")
    api_key: str = Field(..., description="Azure OpenAI API key")
    deployment: str = Field(default="gpt-4o-mini", description="Chat deployment name")
    api_version: str = Field(
        default="2024-02-15-preview",
        description="Azure OpenAI API version for chat completions",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=120, ge=16, le=1000)


class AppConfig(BaseModel):
    """Top-level configuration consumed by the avatar generator."""

    comfyui: ComfyUIConfig = Field(default_factory=ComfyUIConfig)
    assets: AssetStoreConfig = Field(default_factory=AssetStoreConfig)
    prompt_writer: PromptWriterConfig | None = None
    enable_azure_prompt_writer: bool = Field(
        default=False,
        description="Use Azure OpenAI to write prompts instead of the built-in template",
    )

    @model_validator(mode="after")
    def _validate_prompt_writer(self) -> "AppConfig":
        if self.enable_azure_prompt_writer and self.prompt_writer is None:
            raise ValueError(
                "Azure prompt writer configuration is required when enable_azure_prompt_writer is True"
            )
        return self


def _bool_from_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _float_from_env(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value: {value}") from exc


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value: {value}") from exc


def load_config(dotenv_path: str | Path | None = None) -> AppConfig:
    """
    Load configuration from environment variables (optionally seeded by a .env file).

    Parameters
    ----------
    dotenv_path:
        Optional override for the .env file location. Defaults to ``.env`` in the
        working directory.

    Raises
    ------
    RuntimeError
        If values are missing or malformed.
    """
    env_path = Path(dotenv_path) if dotenv_path else Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    enable_azure_prompt_writer = _bool_from_env(os.getenv("ENABLE_AZURE_PROMPT_WRITER"), False)

    prompt_writer_data: dict[str, object] | None
    if enable_azure_prompt_writer:
        prompt_writer_data = {
            "endpoint": os.getenv("AZURE_GPT_ENDPOINT"),
            "api_key": os.getenv("AZURE_GPT_API_KEY"),
            "deployment": os.getenv("AZURE_GPT_DEPLOYMENT", "gpt-4o-mini"),
            "api_version": os.getenv("AZURE_GPT_API_VERSION", "2024-02-15-preview"),
        }
    else:
        prompt_writer_data = None

    user_photo_dir = os.getenv("USER_PHOTO_DIR")

    data = {
        "comfyui": {
            "server_address": os.getenv("COMFYUI_SERVER_ADDRESS", DEFAULT_SERVER_ADDRESS),
            "request_timeout_seconds": _float_from_env(os.getenv("COMFYUI_REQUEST_TIMEOUT"), 60.0),
            "poll_interval_seconds": _float_from_env(os.getenv("COMFYUI_POLL_INTERVAL"), 2.0),
            "max_poll_attempts": _int_from_env(os.getenv("COMFYUI_MAX_POLL_ATTEMPTS"), 60),
            "output_grace_attempts": _int_from_env(os.getenv("COMFYUI_OUTPUT_GRACE_ATTEMPTS"), 5),
            "workflow_profile_path": Path(os.getenv("WORKFLOW_PROFILE_PATH", str(DEFAULT_PROFILE_PATH))),
        },
        "assets": {
            "static_root": Path(os.getenv("STATIC_ASSET_ROOT", "public")),
            "catalog_path": Path(os.getenv("STYLE_CATALOG_PATH", str(DEFAULT_CATALOG_PATH))),
            "user_photo_dir": Path(user_photo_dir) if user_photo_dir else None,
        },
        "prompt_writer": prompt_writer_data,
        "enable_azure_prompt_writer": enable_azure_prompt_writer,
    }

    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        problems = {"/".join(str(part) for part in err["loc"]) for err in exc.errors()}
        problems_str = ", ".join(sorted(problems))
        raise RuntimeError(f"Missing or invalid configuration values: {problems_str}") from exc
