"""Model callers implementing the Template Method pattern.

Every pipeline stage talks to models through one capability:

    invoke(system_prompt, user_prompt, model, call_options) -> ModelResponse

BaseModelCaller.invoke() is the shared algorithm:
    invoke() → _call_api()          ← only this differs per provider
             → empty-text check → ModelResponse

Subclasses implement two things only:
  - __init__: validate and store the async SDK client
  - _call_api: make one raw API call and return text + token usage

There is deliberately no retry here. Each reviewer gets one attempt per run;
a failed reviewer is dropped by the orchestrator instead of retried.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Mapping

from diffpanel_core.errors import ModelCallError
from diffpanel_core.models import ModelResponse, ModelSpec

logger = logging.getLogger(__name__)

_MAX_TOKENS = 16_384

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


class ModelCaller(ABC):
    """Anything that can run one prompt against one model."""

    @abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        call_options: Mapping[str, Any] | None = None,
    ) -> ModelResponse:
        """Run one call. Raises ModelCallError on any provider failure."""


class BaseModelCaller(ModelCaller):
    MAX_TOKENS: int = _MAX_TOKENS

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        call_options: Mapping[str, Any] | None = None,
    ) -> ModelResponse:
        options = {**model.options, **(call_options or {})}
        try:
            response = await self._call_api(system_prompt, user_prompt, model, options)
        except ModelCallError:
            raise
        except Exception as e:
            raise ModelCallError(f"{self.__class__.__name__} call to {model.display_name} failed: {e}") from e

        if not response.text or not response.text.strip():
            raise ModelCallError(f"{model.display_name} returned an empty response")
        logger.debug(
            "%s: %s used %d tokens",
            self.__class__.__name__,
            model.display_name,
            response.usage.total_tokens,
        )
        return response

    @abstractmethod
    async def _call_api(
        self,
        system_prompt: str,
        user_prompt: str,
        model: ModelSpec,
        options: dict[str, Any],
    ) -> ModelResponse:
        """Make a single API call and return the raw text with its token usage.

        This is the only method subclasses must implement. It should raise on
        failure; invoke() wraps whatever it raises in ModelCallError.
        """


def parse_json_payload(raw: str) -> Any:
    """Parse a model's JSON answer, tolerating one outer ```json fence.

    Only the outer fence is stripped; backticks inside string values (code
    suggestions) are left alone. Raises ValueError when the text is not JSON.
    """
    cleaned = _FENCE_OPEN_RE.sub("", raw.strip())
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned.strip())
    return json.loads(cleaned)
