"""
Data models for LLM responses and related structures.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class LLMResponse:
    """Response from a non-streaming LLM call with usage metadata."""
    content: str
    model_used: str = ""
    tokens_used: int = 0
    cost: Optional[float] = None
