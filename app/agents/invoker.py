"""Single-attempt model invocation with normalized errors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .errors import ModelInvocationError, ModelRateLimitError, ModelTimeoutError
from .prompts import ChatMessage
from .providers import ChatCompletionProvider, ModelRegistry
from .responses import ResponseParameterStore

logger = logging.getLogger(__name__)


class ModelInvoker:
    """Call the chat provider once; retry policy belongs to the caller."""

    def __init__(
        self,
        provider: ChatCompletionProvider,
        registry: ModelRegistry | None = None,
        parameters: ResponseParameterStore | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry or ModelRegistry()
        self._parameters = parameters or ResponseParameterStore()

    @property
    def provider_name(self) -> str:
        return getattr(self._provider, "name", "unknown")

    def resolve_model(self, model_id: str | None) -> str:
        return self._registry.resolve(model_id)

    async def invoke(
        self,
        model_id: str | None,
        messages: Sequence[ChatMessage],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        model = self.resolve_model(model_id)
        params = self._parameters.merge(
            self.provider_name, {"temperature": temperature, "max_tokens": max_tokens}
        )
        try:
            text = await self._provider.complete(
                model,
                messages,
                temperature=float(params.get("temperature", 0.7)),
                max_tokens=int(params.get("max_tokens", 1024)),
            )
        except ModelInvocationError:
            raise
        except asyncio.TimeoutError as exc:
            raise ModelTimeoutError(
                f"Model {model} timed out", provider=self.provider_name
            ) from exc
        except Exception as exc:
            logger.exception("Unexpected provider failure for model %s", model)
            raise ModelInvocationError(
                f"Provider failure: {exc}", provider=self.provider_name
            ) from exc

        if not text or not text.strip():
            raise ModelInvocationError(
                f"Model {model} returned an empty completion",
                retryable=True,
                provider=self.provider_name,
            )
        return text


__all__ = [
    "ModelInvocationError",
    "ModelInvoker",
    "ModelRateLimitError",
    "ModelTimeoutError",
]
