from __future__ import annotations

from typing import Any

from diffpanel_core.models import ModelResponse, ModelSpec, TokenUsage
from diffpanel_core.providers.base import BaseModelCaller

# Extended-thinking budgets standing in for OpenAI-style reasoning effort.
THINKING_BUDGETS = {"low": 2_048, "medium": 8_192, "high": 16_384}


class AnthropicCaller(BaseModelCaller):
    # temperature=0.3 unless thinking is on; Anthropic requires the default
    # temperature when extended thinking is enabled.
    TEMPERATURE = 0.3

    def __init__(self, api_key: str):
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'diffpanel[anthropic]'"
            )
        self.client = AsyncAnthropic(api_key=api_key)

    async def _call_api(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        options: dict[str, Any],
    ) -> ModelResponse:
        # Imported inside the method because the anthropic package is optional;
        # __init__ already validated it is installed before we reach here.
        from anthropic.types import TextBlock

        max_tokens = options.get("max_tokens", self.MAX_TOKENS)
        kwargs: dict[str, Any] = {
            "model": model.model,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        budget = THINKING_BUDGETS.get(options.get("reasoning_effort") or "")
        if budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            kwargs["max_tokens"] = max_tokens + budget
        else:
            kwargs["temperature"] = options.get("temperature", self.TEMPERATURE)
            kwargs["max_tokens"] = max_tokens

        response = await self.client.messages.create(**kwargs)
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens or 0,
            completion_tokens=response.usage.output_tokens or 0,
        )
        return ModelResponse(text="".join(text_blocks).strip(), usage=usage)
