from __future__ import annotations

from typing import Any

try:
    from openai import AsyncOpenAI as _AsyncOpenAI
except ImportError:
    _AsyncOpenAI = None  # type: ignore[assignment,misc]

from diffpanel_core.models import ModelResponse, ModelSpec, TokenUsage
from diffpanel_core.providers.base import BaseModelCaller

# Options forwarded verbatim to chat.completions.create when present.
_PASSTHROUGH_OPTIONS = ("temperature", "top_p", "seed")


class OpenAICaller(BaseModelCaller):
    def __init__(self, api_key: str):
        if _AsyncOpenAI is None:
            raise ImportError(
                "The 'openai' package is required for this provider. Install it with: pip install 'diffpanel[openai]'"
            )
        self.client = _AsyncOpenAI(api_key=api_key)

    async def _call_api(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        options: dict[str, Any],
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_completion_tokens": options.get("max_tokens", self.MAX_TOKENS),
        }
        # Reasoning models reject sampling parameters, so only one of the two is sent.
        if options.get("reasoning_effort"):
            kwargs["reasoning_effort"] = options["reasoning_effort"]
        else:
            kwargs.update({k: options[k] for k in _PASSTHROUGH_OPTIONS if k in options})

        response = await self.client.chat.completions.create(**kwargs)
        text = response.choices[0].message.content or ""
        return ModelResponse(text=text.strip(), usage=_usage_from_response(response))


def _usage_from_response(response) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    details = getattr(usage, "completion_tokens_details", None)
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        reasoning_tokens=(getattr(details, "reasoning_tokens", None) or 0) if details else 0,
        total_tokens=usage.total_tokens or 0,
    )
