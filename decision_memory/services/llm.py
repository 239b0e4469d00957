"""Chat completion client (structured JSON output only)."""
import json
import logging
from typing import Any, Dict, Optional, Protocol

from openai import OpenAI

from decision_memory.settings import settings

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    """The completion provider failed or returned something unusable."""


class CompletionProvider(Protocol):
    """Protocol for completion providers."""

    def complete(self, system_prompt: str, user_message: str) -> str:
        """Return the raw JSON string produced for the prompt."""
        ...


class OpenAICompletionProvider:
    """OpenAI (or OpenAI-compatible) chat completion in JSON mode."""

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float,
        base_url: Optional[str] = None,
    ):
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=settings.OPENAI_TIMEOUT)
        self.model = model
        self.temperature = temperature

    def complete(self, system_prompt: str, user_message: str) -> str:
        """
        Run a chat completion with JSON mode enforced.

        Raises:
            CompletionError: If the provider call fails or returns no content
        """
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
            )
        except Exception as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise CompletionError("Completion provider returned empty content")
        return content


def get_completion_provider() -> CompletionProvider:
    """
    Get configured completion provider.

    Raises:
        ValueError: If OPENAI_API_KEY is not configured
    """
    if not settings.OPENAI_API_KEY:
        raise ValueError("OPENAI_API_KEY is required for chat completions")
    return OpenAICompletionProvider(
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_CHAT_MODEL,
        temperature=settings.OPENAI_CHAT_TEMPERATURE,
        base_url=settings.OPENAI_BASE_URL,
    )


def complete_json(
    provider: CompletionProvider,
    system_prompt: str,
    user_message: str,
) -> Dict[str, Any]:
    """
    Complete and parse a JSON object.

    Raises:
        CompletionError: On provider failure, empty output or malformed JSON
    """
    raw = provider.complete(system_prompt, user_message)
    if not raw or not raw.strip():
        raise CompletionError("Completion provider returned empty content")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CompletionError(f"Completion was not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise CompletionError("Completion JSON must be an object")
    return parsed
