"""
LiteLLM-based completion source.

Provides a single-shot call (used for title generation) and a streaming call
(used for assistant responses) over any provider LiteLLM supports. Models are
declared in llmconfig.yml; API keys and extra headers may reference
environment variables with the ``${VAR}`` syntax.
"""

import logging
import os
import warnings
from typing import Any, Dict, List, Optional

# litellm touches Pydantic attributes deprecated in 2.11 on every streaming
# chunk; the warnings are noise in the logs.
try:
    from pydantic import PydanticDeprecatedSince211
    warnings.filterwarnings("ignore", category=PydanticDeprecatedSince211)
except ImportError:
    pass

import litellm
from litellm import acompletion

from chatledger.core.metrics_logger import log_metric
from chatledger.modules.config.config_manager import resolve_env_var

from .litellm_streaming import LiteLLMStreamingMixin
from .models import LLMResponse

logger = logging.getLogger(__name__)

# Configure LiteLLM settings
litellm.drop_params = True  # Drop unsupported params instead of erroring

# URL fragment -> (litellm prefix, provider env var). Order matters: groq and
# openrouter URLs can contain "openai" in the path.
_PROVIDERS = [
    ("openrouter", "openrouter", "OPENROUTER_API_KEY"),
    ("groq", "openai", "GROQ_API_KEY"),
    ("openai", "openai", "OPENAI_API_KEY"),
    ("anthropic", "anthropic", "ANTHROPIC_API_KEY"),
    ("google", "google", "GOOGLE_API_KEY"),
    ("cerebras", "cerebras", "CEREBRAS_API_KEY"),
]

_STANDARD_ENDPOINTS = ["openrouter", "api.openai.com", "api.anthropic.com", "api.cerebras.ai"]


class LiteLLMCaller(LiteLLMStreamingMixin):
    """Completion source backed by LiteLLM.

    Note: this class may set provider-specific API key environment variables
    (for example ``OPENAI_API_KEY``) to keep LiteLLM's provider detection
    working. This is best-effort and not isolated between tenants.
    """

    def __init__(self, llm_config=None, debug_mode: bool = False):
        if llm_config is None:
            from chatledger.modules.config import config_manager
            self.llm_config = config_manager.llm_config
        else:
            self.llm_config = llm_config

        # The suppress flag takes precedence over debug mode
        from chatledger.modules.config.config_manager import get_app_settings
        app_settings = get_app_settings()
        if app_settings.feature_suppress_litellm_logging:
            litellm.set_verbose = False
        else:
            litellm.set_verbose = debug_mode

    def _get_model_config(self, model_name: str):
        if model_name not in self.llm_config.models:
            raise ValueError(f"Model {model_name} not found in configuration")
        return self.llm_config.models[model_name]

    def _get_litellm_model_name(self, model_name: str) -> str:
        """Convert internal model name to LiteLLM compatible format."""
        model_config = self._get_model_config(model_name)
        model_id = model_config.model_name

        for fragment, prefix, _env_key in _PROVIDERS:
            if fragment in model_config.model_url:
                return f"{prefix}/{model_id}"
        # Custom endpoints use the model id directly
        return model_id

    def get_provider(self, model_name: str) -> str:
        """Provider label for version metadata."""
        model_config = self.llm_config.models.get(model_name)
        if model_config is None:
            return "unknown"
        if model_config.provider:
            return model_config.provider
        for fragment, _prefix, _env_key in _PROVIDERS:
            if fragment in model_config.model_url:
                return fragment
        return "custom"

    def supports_web_search(self, model_name: str) -> bool:
        model_config = self.llm_config.models.get(model_name)
        return bool(model_config and model_config.supports_web_search)

    def _get_model_kwargs(
        self,
        model_name: str,
        temperature: Optional[float] = None,
        enable_web_search: bool = False,
    ) -> Dict[str, Any]:
        """Get LiteLLM kwargs for a specific model."""
        model_config = self._get_model_config(model_name)
        kwargs: Dict[str, Any] = {
            "max_tokens": model_config.max_tokens or 1000,
        }

        if temperature is not None:
            kwargs["temperature"] = temperature
        else:
            kwargs["temperature"] = model_config.temperature or 0.7

        try:
            api_key = resolve_env_var(model_config.api_key) if model_config.api_key else None
        except ValueError as e:
            logger.error(f"Failed to resolve API key for model {model_name}: {e}")
            raise

        if api_key:
            kwargs["api_key"] = api_key
            env_key = next(
                (key for fragment, _prefix, key in _PROVIDERS if fragment in model_config.model_url),
                # OpenAI-compatible custom endpoint
                "OPENAI_API_KEY",
            )
            existing = os.environ.get(env_key)
            if existing is not None and existing != api_key:
                logger.warning(
                    "Overwriting existing environment variable %s for model %s",
                    env_key,
                    model_name,
                )
            os.environ[env_key] = api_key

        if model_config.model_url and not any(
            endpoint in model_config.model_url for endpoint in _STANDARD_ENDPOINTS
        ):
            kwargs["api_base"] = model_config.model_url

        if model_config.extra_headers:
            extra_headers_resolved = {}
            for header_key, header_value in model_config.extra_headers.items():
                try:
                    extra_headers_resolved[header_key] = resolve_env_var(header_value)
                except ValueError as e:
                    logger.error(f"Failed to resolve extra header '{header_key}' for model {model_name}: {e}")
                    raise
            kwargs["extra_headers"] = extra_headers_resolved

        if enable_web_search:
            if model_config.supports_web_search:
                kwargs["web_search_options"] = {"search_context_size": "medium"}
            else:
                logger.info("Web search requested but not supported by model %s; ignoring", model_name)

        return kwargs

    async def call_plain(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> LLMResponse:
        """Plain, non-streaming LLM call.

        Args:
            model_name: Name of the model to use
            messages: List of message dicts with 'role' and 'content'
            temperature: Optional temperature override (uses config default if None)
            max_tokens: Optional max_tokens override (uses config default if None)
            user_email: Optional user email for metrics logging
            enable_web_search: Ask the provider to ground the answer in web results
        """
        litellm_model = self._get_litellm_model_name(model_name)
        model_kwargs = self._get_model_kwargs(model_name, temperature, enable_web_search)

        if max_tokens is not None:
            model_kwargs["max_tokens"] = max_tokens

        try:
            total_chars = sum(len(str(msg.get('content', ''))) for msg in messages)
            logger.info(f"Plain LLM call: {len(messages)} messages, {total_chars} chars")

            response = await acompletion(
                model=litellm_model,
                messages=messages,
                **model_kwargs
            )
        except Exception as exc:
            logger.error("Error calling LLM: %s", exc, exc_info=True)
            raise

        content = response.choices[0].message.content or ""
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"LLM response preview: '{content[:200]}{'...' if len(content) > 200 else ''}'")
        else:
            logger.info(f"LLM response length: {len(content)} chars")

        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0

        log_metric("llm_call", user_email, model=model_name, message_count=len(messages), tokens=tokens_used)

        return LLMResponse(
            content=content,
            model_used=getattr(response, "model", None) or model_name,
            tokens_used=tokens_used,
            cost=self._completion_cost(response, model_name),
        )

    @staticmethod
    def _completion_cost(response: Any, model_name: str) -> Optional[float]:
        try:
            return litellm.completion_cost(completion_response=response)
        except Exception as exc:  # litellm raises for models without pricing data
            logger.debug("No cost data for model %s: %s", model_name, exc)
            return None
