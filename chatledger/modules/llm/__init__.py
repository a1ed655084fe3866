"""LLM module: litellm-backed completion source and response models."""

from .litellm_caller import LiteLLMCaller
from .models import LLMResponse

__all__ = [
    "LiteLLMCaller",
    "LLMResponse",
]
