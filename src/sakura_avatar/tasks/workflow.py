from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

SEED_BITS = 32


class BindingRole(str, Enum):
    """Logical slots of the workflow that are rewritten for every request."""

    SUBJECT_IMAGE = "subject_image"
    GARMENT_IMAGE = "garment_image"
    BACKDROP_IMAGE = "backdrop_image"
    POSITIVE_PROMPT = "positive_prompt"
    PROMPT_DISPLAY = "prompt_display"
    SEED = "seed"
    OUTPUT_PREFIX = "output_prefix"


def _copy_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _copy_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_copy_value(item) for item in value]
    return value


@dataclass(slots=True)
class NodeSpec:
    """One step of a ComfyUI API-format workflow."""

    class_type: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeSpec":
        if "class_type" not in data:
            raise ValueError("node is missing 'class_type'")
        inputs = data.get("inputs") or {}
        if not isinstance(inputs, Mapping):
            raise ValueError("node 'inputs' must be an object")
        extra = {key: value for key, value in data.items() if key not in {"class_type", "inputs"}}
        return cls(
            class_type=str(data["class_type"]),
            inputs=_copy_value(dict(inputs)),
            extra=_copy_value(extra),
        )

    def copy(self) -> "NodeSpec":
        return NodeSpec(
            class_type=self.class_type,
            inputs=_copy_value(self.inputs),
            extra=_copy_value(self.extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"class_type": self.class_type, "inputs": _copy_value(self.inputs)}
        data.update(_copy_value(self.extra))
        return data


class JobGraph:
    """Mapping of node keys to node specs; the unit submitted to ``/prompt``."""

    __slots__ = ("_nodes",)

    def __init__(self, nodes: Mapping[str, NodeSpec]) -> None:
        self._nodes: Dict[str, NodeSpec] = dict(nodes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobGraph":
        nodes: Dict[str, NodeSpec] = {}
        for key, node in data.items():
            if not isinstance(node, Mapping):
                raise ValueError(f"Workflow node '{key}' must be an object")
            try:
                nodes[str(key)] = NodeSpec.from_dict(node)
            except ValueError as exc:
                raise ValueError(f"Workflow node '{key}': {exc}") from exc
        return cls(nodes)

    @classmethod
    def load(cls, path: str | Path) -> "JobGraph":
        """Load an API-format workflow JSON file."""
        with Path(path).open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise RuntimeError(f"Workflow template at {path} must be a JSON object")
        try:
            return cls.from_dict(data)
        except ValueError as exc:
            raise RuntimeError(f"Invalid workflow template at {path}: {exc}") from exc

    def copy(self) -> "JobGraph":
        return JobGraph({key: node.copy() for key, node in self._nodes.items()})

    def to_dict(self) -> Dict[str, Any]:
        return {key: node.to_dict() for key, node in self._nodes.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __getitem__(self, key: str) -> NodeSpec:
        return self._nodes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobGraph):
            return NotImplemented
        return self.to_dict() == other.to_dict()


class NodeBinding(BaseModel):
    """Where a role's value is written: ``graph[node].inputs[param]``."""

    node: str
    param: str


class OutputProvider(BaseModel):
    """A node that may carry the final image, in preference order."""

    role: str
    node: str


class WorkflowProfile(BaseModel):
    """Role table and output preference order configured alongside a template."""

    name: str = Field(default="workflow")
    template: str = Field(..., description="Template file, relative to the profile file")
    bindings: Dict[BindingRole, NodeBinding]
    output_providers: List[OutputProvider] = Field(..., min_length=1)
    output_prefix: str = Field(default="SakuraAvatar")


@dataclass(slots=True, frozen=True)
class BindingGap:
    """A role whose target could not be found in the template."""

    role: BindingRole
    node: str
    param: str
    reason: str

    def __str__(self) -> str:
        return f"{self.role.value} -> node {self.node}.{self.param}: {self.reason}"


@dataclass(slots=True, frozen=True)
class LoadedWorkflow:
    """A template and its profile, loaded once at startup and only read afterwards."""

    profile: WorkflowProfile
    template: JobGraph
    gaps: tuple[BindingGap, ...] = ()


def validate_profile(template: JobGraph, profile: WorkflowProfile) -> List[BindingGap]:
    """Report every role binding that does not line up with the template."""
    gaps: List[BindingGap] = []
    for role in BindingRole:
        binding = profile.bindings.get(role)
        if binding is None:
            gaps.append(BindingGap(role, "-", "-", "role is not configured"))
            continue
        if binding.node not in template:
            gaps.append(BindingGap(role, binding.node, binding.param, "node missing from template"))
        elif binding.param not in template[binding.node].inputs:
            gaps.append(BindingGap(role, binding.node, binding.param, "input missing from node"))
    for provider in profile.output_providers:
        if provider.node not in template:
            logger.warning("Output provider %s refers to missing node %s", provider.role, provider.node)
    return gaps


def load_workflow(profile_path: str | Path) -> LoadedWorkflow:
    """Load a workflow profile and the template it names, reporting binding gaps."""
    path = Path(profile_path)
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)

    try:
        profile = WorkflowProfile.model_validate(data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid workflow profile at {path}") from exc

    template = JobGraph.load(path.parent / profile.template)
    gaps = validate_profile(template, profile)
    for gap in gaps:
        logger.warning("Workflow '%s' binding gap: %s", profile.name, gap)
    return LoadedWorkflow(profile=profile, template=template, gaps=tuple(gaps))


def new_seed() -> int:
    """Draw a fresh uniformly random unsigned 32-bit seed."""
    return secrets.randbits(SEED_BITS)


def output_prefix(base: str, requester_id: str, *, now: float | None = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"{base}_{requester_id}_{millis}"


def role_bindings(
    profile: WorkflowProfile, values: Mapping[BindingRole, Any]
) -> Dict[str, Dict[str, Any]]:
    """Translate role values into ``{node_key: {param: value}}`` using the profile."""
    bindings: Dict[str, Dict[str, Any]] = {}
    for role, value in values.items():
        binding = profile.bindings.get(role)
        if binding is None:
            logger.warning("No binding configured for role %s; value skipped", role.value)
            continue
        bindings.setdefault(binding.node, {})[binding.param] = value
    return bindings


def bind_graph(template: JobGraph, bindings: Mapping[str, Mapping[str, Any]]) -> JobGraph:
    """
    Return a copy of ``template`` with the given node inputs overwritten.

    Bindings whose node key is not in the template are logged and skipped; the
    rest are still applied. Whether the resulting graph is runnable is left to
    the backend's own validation at submission time.
    """
    graph = template.copy()
    for node_key, params in bindings.items():
        if node_key not in graph:
            logger.warning(
                "Workflow node %s not found; skipping binding of %s",
                node_key,
                ", ".join(sorted(params)),
            )
            continue
        inputs = graph[node_key].inputs
        for param, value in params.items():
            inputs[param] = _copy_value(value)
    return graph
