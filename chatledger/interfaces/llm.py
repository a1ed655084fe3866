"""Completion source interface protocols."""

from typing import AsyncGenerator, Dict, List, Optional, Protocol, runtime_checkable

from chatledger.modules.llm.models import LLMResponse as LLMResponse


@runtime_checkable
class CompletionSource(Protocol):
    """Produces model output for an ordered list of role-tagged turns."""

    async def call_plain(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> LLMResponse:
        """Single, non-streaming completion with usage."""
        ...

    def stream_plain(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> AsyncGenerator[str, None]:
        """Lazy, finite, cancelable sequence of text fragments."""
        ...

    def get_provider(self, model_name: str) -> str:
        """Provider label recorded in version metadata."""
        ...
