"""
Generation pipeline stages: asset resolution, workflow binding, polling and extraction.
"""
from .assets import AssetResolver
from .extractor import ResultExtractor, select_output
from .poller import CompletionPoller
from .request import GenerationRequest, UploadedPhoto
from .workflow import BindingRole, JobGraph, LoadedWorkflow, WorkflowProfile, bind_graph, load_workflow

__all__ = [
    "AssetResolver",
    "BindingRole",
    "CompletionPoller",
    "GenerationRequest",
    "JobGraph",
    "LoadedWorkflow",
    "ResultExtractor",
    "UploadedPhoto",
    "WorkflowProfile",
    "bind_graph",
    "load_workflow",
    "select_output",
]
