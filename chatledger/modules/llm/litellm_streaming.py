"""Streaming methods for LiteLLMCaller.

These methods are mixed into LiteLLMCaller via LiteLLMStreamingMixin.
"""

import asyncio
import logging
from typing import AsyncGenerator, Dict, List, Optional

from litellm import acompletion

from chatledger.core.metrics_logger import log_metric

logger = logging.getLogger(__name__)


class LiteLLMStreamingMixin:
    """Mixin providing streaming LLM methods for LiteLLMCaller.

    Expects the host class to provide:
      - _get_litellm_model_name(model_name) -> str
      - _get_model_kwargs(model_name, temperature, enable_web_search) -> dict
    """

    async def stream_plain(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> AsyncGenerator[str, None]:
        """Stream plain LLM response token-by-token.

        Yields string chunks as they arrive from the LLM provider. Closing the
        generator (``aclose``) stops consuming the upstream response.
        """
        litellm_model = self._get_litellm_model_name(model_name)
        model_kwargs = self._get_model_kwargs(model_name, temperature, enable_web_search)

        if max_tokens is not None:
            model_kwargs["max_tokens"] = max_tokens

        total_chars = sum(len(str(msg.get('content', ''))) for msg in messages)
        logger.info("Streaming plain LLM call: %d messages, %d chars", len(messages), total_chars)

        try:
            response = await acompletion(
                model=litellm_model,
                messages=messages,
                stream=True,
                **model_kwargs,
            )

            chunk_count = 0
            total_chunks_seen = 0
            async for chunk in response:
                total_chunks_seen += 1
                delta = chunk.choices[0].delta if chunk.choices else None
                if total_chunks_seen <= 3:
                    logger.debug(
                        "Stream chunk #%d for %s: choices=%s, content_len=%s",
                        total_chunks_seen, model_name,
                        bool(chunk.choices),
                        len(delta.content) if delta and delta.content else 0,
                    )
                if delta and delta.content:
                    yield delta.content
                    chunk_count += 1
                    # Yield control periodically to prevent backpressure buildup
                    if chunk_count % 50 == 0:
                        await asyncio.sleep(0)

            if chunk_count == 0 and total_chunks_seen > 0:
                logger.warning(
                    "Stream for %s received %d chunks but yielded 0 tokens",
                    model_name, total_chunks_seen,
                )
            log_metric("llm_call", user_email, model=model_name, message_count=len(messages), fragments=chunk_count)

        except (asyncio.CancelledError, GeneratorExit):
            raise
        except Exception as exc:
            logger.error("Error in streaming LLM call: %s", exc, exc_info=True)
            raise
