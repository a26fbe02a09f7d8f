from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import openai
from openai import OpenAI

from harrier.config import Settings
from harrier.errors import ExternalServiceError, RateLimitError, parse_retry_after
from harrier.types import ModelResponse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    timeout_sec: int
    rate_limit_default_reset_sec: int = 60


class LLMProvider:
    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client = OpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=float(config.timeout_sec),
        )

    def complete_text(self, *, model: str, prompt: str) -> ModelResponse:
        try:
            try:
                return self._complete_via_responses(model=model, prompt=prompt)
            except openai.RateLimitError:
                raise
            except Exception as exc:
                if not self._is_unsupported_responses_endpoint(exc):
                    raise

                logger.warning(
                    "Responses API unavailable for provider=%s base_url=%s; "
                    "falling back to chat.completions (%s)",
                    self.config.name,
                    self.config.base_url,
                    exc,
                )
                return self._complete_via_chat_completions(model=model, prompt=prompt)
        except openai.RateLimitError as exc:
            raise self._rate_limit(exc) from exc
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as exc:
            raise ExternalServiceError(
                f"{self.config.name} request failed: {exc}",
                service=self.config.name,
                status_code=getattr(exc, "status_code", None),
            ) from exc

    def complete_json(self, *, model: str, prompt: str) -> dict[str, Any]:
        text_response = self.complete_text(model=model, prompt=prompt)
        return parse_json(text_response.content)

    def _rate_limit(self, exc: openai.RateLimitError) -> RateLimitError:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None) or {}
        seconds = parse_retry_after(
            headers.get("retry-after"),
            default_seconds=self.config.rate_limit_default_reset_sec,
        )
        return RateLimitError.after(
            f"{self.config.name} rate limited: {exc}",
            limit_type="llm",
            seconds=seconds,
        )

    def _complete_via_responses(self, *, model: str, prompt: str) -> ModelResponse:
        response = self.client.responses.create(
            model=model,
            input=[
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": prompt}],
                }
            ],
        )
        text = getattr(response, "output_text", "") or ""
        raw = response.model_dump() if hasattr(response, "model_dump") else {}
        if not isinstance(raw, dict):
            raw = {"raw": raw}
        raw["api_path"] = "responses"
        return ModelResponse(content=text, raw=raw)

    def _complete_via_chat_completions(self, *, model: str, prompt: str) -> ModelResponse:
        response = self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
        )

        text = self._extract_chat_text(response)
        raw = response.model_dump() if hasattr(response, "model_dump") else {}
        if not isinstance(raw, dict):
            raw = {"raw": raw}
        raw["api_path"] = "chat_completions"
        return ModelResponse(content=text, raw=raw)

    @staticmethod
    def _extract_chat_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""

        message = getattr(choices[0], "message", None)
        if message is None:
            return ""

        content = getattr(message, "content", "")
        if isinstance(content, str):
            return content
        if content is None:
            return ""
        return str(content)

    @staticmethod
    def _is_unsupported_responses_endpoint(exc: Exception) -> bool:
        status_code = getattr(exc, "status_code", None)
        if status_code == 404:
            return True

        message = str(exc).strip().lower()
        if not message:
            return False

        return "not found" in message or "404" in message


def parse_json(content: str) -> dict[str, Any]:
    candidate = content.strip()
    if not candidate:
        return {}

    if "```" in candidate:
        for part in candidate.split("```"):
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part.startswith("{") and part.endswith("}"):
                candidate = part
                break

    try:
        value = json.loads(candidate)
        return value if isinstance(value, dict) else {}
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON model output")
        return {}


class ProviderPool:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._openai: LLMProvider | None = None
        self._local: LLMProvider | None = None

    def openai(self) -> LLMProvider:
        if self._openai is None:
            self._openai = LLMProvider(
                ProviderConfig(
                    name="openai",
                    base_url=self.settings.openai_base_url,
                    api_key=self.settings.openai_api_key,
                    timeout_sec=self.settings.openai_timeout_sec,
                    rate_limit_default_reset_sec=self.settings.rate_limit_default_reset_sec,
                )
            )
        return self._openai

    def local(self) -> LLMProvider:
        if self._local is None:
            self._local = LLMProvider(
                ProviderConfig(
                    name="local",
                    base_url=self.settings.local_llm_base_url,
                    api_key=self.settings.local_llm_api_key,
                    timeout_sec=self.settings.local_llm_timeout_sec,
                    rate_limit_default_reset_sec=self.settings.rate_limit_default_reset_sec,
                )
            )
        return self._local

    def is_enabled(self, provider: LLMProvider) -> bool:
        if provider.config.name == "openai":
            return bool(self.settings.openai_api_key)
        if provider.config.name == "local":
            return self.settings.local_llm_enabled
        return True
