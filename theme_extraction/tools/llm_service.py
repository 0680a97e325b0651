"""
LLM Service — pydantic-ai backed text completion for extraction and labeling.

The engine only needs raw text back: responses are validated by
tools.json_repair.parse_model() against the *LLM schemas, and every call is
wrapped by RateLimitedExecutor, so this class does no retrying of its own
(pydantic-ai retries are disabled to keep the attempt count exact).

Any object exposing `provider_name` and
`async complete(prompt, system_prompt="") -> str` can stand in for LLMService.
"""

import logging
from typing import Dict, Optional

from pydantic_ai import Agent
from pydantic_ai.models.function import FunctionModel
from pydantic_ai.settings import ModelSettings

from ..config import get_settings
from . import mock_responses

logger = logging.getLogger(__name__)


class LLMService:
    """Text completion through a cached pydantic-ai Agent.

    Provider selection follows Settings.get_llm_config(): an OpenAI-compatible
    endpoint by default, Groq when LLM_PROVIDER=groq. Mock mode (or an
    explicit `model`, e.g. a FunctionModel in tests) bypasses the network.
    """

    # Cache agents by (model identity, system prompt) across all instances
    _agent_cache: Dict[tuple, Agent] = {}

    def __init__(self, settings=None, mock_mode: bool = False, model=None):
        self.settings = settings or get_settings()
        self.mock_mode = mock_mode or self.settings.mock_mode
        self._model_override = model
        self._model = None
        llm_config = self.settings.get_llm_config()
        if model is not None:
            self.provider_name = getattr(model, "system", None) or "custom"
            self.model_name = getattr(model, "model_name", "custom")
        elif self.mock_mode:
            self.provider_name = "mock"
            self.model_name = "mock"
        else:
            self.provider_name = llm_config["provider"]
            self.model_name = llm_config["model"]
        logger.info(f"LLM: {self.provider_name}/{self.model_name}{' (MOCK)' if self.mock_mode else ''}")

    def _build_model(self):
        if self._model_override is not None:
            return self._model_override
        if self.mock_mode:
            return FunctionModel(mock_responses.get_mock_response_for_function_model)
        cfg = self.settings.get_llm_config()
        if cfg["provider"] == "groq":
            from pydantic_ai.models.groq import GroqModel
            from pydantic_ai.providers.groq import GroqProvider
            return GroqModel(cfg["model"], provider=GroqProvider(api_key=cfg["api_key"]))
        from pydantic_ai.models.openai import OpenAIChatModel
        from pydantic_ai.providers.openai import OpenAIProvider
        if not cfg.get("api_key") and not cfg.get("base_url"):
            raise RuntimeError(
                "No LLM provider configured: set OPENAI_API_KEY (or OPENAI_BASE_URL), "
                "GROQ_API_KEY with LLM_PROVIDER=groq, or MOCK_MODE=true"
            )
        return OpenAIChatModel(
            cfg["model"],
            provider=OpenAIProvider(api_key=cfg.get("api_key") or None, base_url=cfg.get("base_url")),
        )

    def _get_or_create_agent(self, system_prompt: str) -> Agent:
        if self._model is None:
            self._model = self._build_model()
        key = (id(self._model), hash(system_prompt))
        if key not in self._agent_cache:
            self._agent_cache[key] = Agent(
                self._model,
                output_type=str,
                system_prompt=system_prompt,
                retries=0,
            )
        return self._agent_cache[key]

    async def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
    ) -> str:
        """Run one completion and return the raw text output."""
        agent = self._get_or_create_agent(system_prompt)
        result = await agent.run(
            prompt,
            model_settings=ModelSettings(
                temperature=self.settings.llm_temperature if temperature is None else temperature,
                timeout=self.settings.llm_timeout_seconds,
            ),
        )
        return result.output

    @classmethod
    def clear_cache(cls):
        """Clear agent cache. Useful for testing or config changes."""
        cls._agent_cache.clear()
