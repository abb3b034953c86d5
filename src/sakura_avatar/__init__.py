"""
Kimono avatar generation on a ComfyUI backend.
"""
from .config import load_config
from .tasks.generator import AvatarGenerator

__all__ = ["load_config", "AvatarGenerator"]
