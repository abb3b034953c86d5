"""
Client adapters for the ComfyUI backend and the prompt writer.
"""
from .comfyui import ComfyUIClient, QueuedPrompt
from .prompt_writer import AzurePromptWriter, PromptWriter, TemplatePromptWriter

__all__ = ["ComfyUIClient", "QueuedPrompt", "AzurePromptWriter", "PromptWriter", "TemplatePromptWriter"]
