"""Chat-completion providers and credential helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI

from ..nlp import is_hebrew
from .errors import ModelInvocationError, ModelRateLimitError, ModelTimeoutError
from .prompts import ChatMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """Container for credentials resolved for a provider."""

    provider: str
    api_key: str | None
    extras: dict[str, str]


class ProviderRegistry:
    """Resolve provider credentials from environment or explicit overrides."""

    _DEFAULT_ENV_MAP: Mapping[str, str] = {
        "openai": "OPENAI_API_KEY",
        "azure": "AZURE_OPENAI_API_KEY",
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, str]] | None = None):
        self._overrides = {k.lower(): dict(v) for k, v in (overrides or {}).items()}

    def get_credentials(self, provider: str) -> ProviderCredentials:
        """Return credentials for ``provider``.

        Explicit overrides win over environment variables.
        """

        key = provider.lower()
        if key in self._overrides:
            override = self._overrides[key]
            return ProviderCredentials(
                provider=provider,
                api_key=override.get("api_key"),
                extras={k: v for k, v in override.items() if k != "api_key"},
            )
        env_var = self._DEFAULT_ENV_MAP.get(key)
        api_key = os.getenv(env_var) if env_var else None
        extras: dict[str, str] = {}
        base_url = os.getenv("OPENAI_BASE_URL") if key == "openai" else None
        if key == "azure":
            base_url = os.getenv("AZURE_OPENAI_ENDPOINT")
        if base_url:
            extras["base_url"] = base_url
        return ProviderCredentials(provider=provider, api_key=api_key, extras=extras)


class ChatCompletionProvider(Protocol):
    name: str

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


class OpenAIChatProvider:
    """OpenAI (or compatible) chat completions with normalized errors."""

    name = "openai"

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        request_timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(
            api_key=credentials.api_key,
            base_url=credentials.extras.get("base_url"),
            max_retries=0,
        )
        self._timeout = request_timeout

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[message.as_dict() for message in messages],
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self._timeout,
            )
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(str(e), provider=self.name) from e
        except openai.RateLimitError as e:
            raise ModelRateLimitError(
                str(e), provider=self.name, retry_after=_retry_after(e)
            ) from e
        except openai.APIConnectionError as e:
            raise ModelInvocationError(str(e), retryable=True, provider=self.name) from e
        except openai.APIStatusError as e:
            raise ModelInvocationError(
                str(e),
                retryable=e.status_code >= 500,
                provider=self.name,
                status_code=e.status_code,
            ) from e
        except openai.APIError as e:
            raise ModelInvocationError(str(e), provider=self.name) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def _retry_after(error: openai.RateLimitError) -> Optional[float]:
    header = error.response.headers.get("retry-after") if error.response else None
    try:
        return float(header) if header else None
    except ValueError:
        return None


class EchoChatProvider:
    """Deterministic offline provider used when no API key is configured."""

    name = "echo"

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        question = messages[-1].content if messages else ""
        if is_hebrew(question):
            reply = f"קיבלתי את הודעתך: {question}"
        else:
            reply = f"You asked: {question}"
        return reply[: max(max_tokens * 4, 1)]


class ModelRegistry:
    """Known model ids and the default used for unknown ones."""

    KNOWN_MODELS = ("gpt-4", "gpt-4-turbo-preview", "gpt-3.5-turbo", "gpt-4o", "gpt-4o-mini")

    def __init__(
        self,
        default_model: str = "gpt-4",
        models: Sequence[str] | None = None,
    ) -> None:
        self._models = set(models or self.KNOWN_MODELS)
        self._models.add(default_model)
        self.default_model = default_model

    def resolve(self, model_id: str | None) -> str:
        if model_id and model_id in self._models:
            return model_id
        logger.warning(
            "Unknown model %r; falling back to %s", model_id, self.default_model
        )
        return self.default_model

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models


def build_chat_provider(
    registry: ProviderRegistry | None = None, provider: str = "openai"
) -> ChatCompletionProvider:
    """Return an OpenAI provider when credentials exist, otherwise the echo provider."""

    credentials = (registry or ProviderRegistry()).get_credentials(provider)
    if credentials.api_key:
        return OpenAIChatProvider(credentials)
    logger.info("No %s credentials configured; using echo provider", provider)
    return EchoChatProvider()


__all__ = [
    "ChatCompletionProvider",
    "EchoChatProvider",
    "ModelRegistry",
    "OpenAIChatProvider",
    "ProviderCredentials",
    "ProviderRegistry",
    "build_chat_provider",
]
