"""Model providers and the router that dispatches a ModelSpec to one of them."""

from __future__ import annotations

from typing import Any, Callable, Mapping

from diffpanel_core.errors import ConfigError, ModelCallError
from diffpanel_core.models import ModelResponse, ModelSpec, ReviewSetup
from diffpanel_core.providers.base import BaseModelCaller, ModelCaller, parse_json_payload

__all__ = [
    "BaseModelCaller",
    "ModelCaller",
    "ProviderRouter",
    "build_model_caller",
    "missing_api_keys",
    "parse_json_payload",
]

API_KEY_SETTINGS = {
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
}


def _make_caller(provider: str, api_key: str) -> BaseModelCaller:
    if provider == "anthropic":
        from diffpanel_core.providers.anthropic import AnthropicCaller

        return AnthropicCaller(api_key=api_key)
    if provider == "openai":
        from diffpanel_core.providers.openai import OpenAICaller

        return OpenAICaller(api_key=api_key)
    raise ConfigError(f"Unknown model provider: {provider!r}. Choose 'anthropic' or 'openai'.")


class ProviderRouter(ModelCaller):
    """Routes each call to the caller for ``model.provider``.

    Provider clients are created on first use, so a run that only uses
    OpenAI models never needs the anthropic package or key.
    """

    def __init__(
        self,
        api_keys: Mapping[str, str | None],
        factory: Callable[[str, str], ModelCaller] = _make_caller,
    ):
        self.api_keys = dict(api_keys)
        self._factory = factory
        self._callers: dict[str, ModelCaller] = {}

    def caller_for(self, provider: str) -> ModelCaller:
        if provider not in self._callers:
            api_key = self.api_keys.get(provider)
            if not api_key:
                env_var = API_KEY_SETTINGS.get(provider, ("", provider.upper() + "_API_KEY"))[1]
                raise ModelCallError(f"No API key for provider {provider!r}. Set {env_var}.")
            self._callers[provider] = self._factory(provider, api_key)
        return self._callers[provider]

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        call_options: Mapping[str, Any] | None = None,
    ) -> ModelResponse:
        return await self.caller_for(model.provider).invoke(system_prompt, user_prompt, model, call_options)


def build_model_caller(config: dict) -> ProviderRouter:
    return ProviderRouter({provider: config.get(key) for provider, (key, _env) in API_KEY_SETTINGS.items()})


def missing_api_keys(setup: ReviewSetup, config: dict) -> list[str]:
    """Environment variables that must be set before ``setup`` can run."""
    missing = []
    for provider in sorted(setup.providers):
        key, env_var = API_KEY_SETTINGS.get(provider, (f"{provider}_api_key", provider.upper() + "_API_KEY"))
        if not config.get(key):
            missing.append(env_var)
    return missing
