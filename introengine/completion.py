"""
Completion service used for outreach copy, follow-up drafts and enrichment.

Any object with complete(system_prompt, user_prompt) -> dict can stand in
for AnthropicCompletionService (tests pass a MagicMock). Failures surface as
ServiceError; callers decide whether to skip or degrade.
"""

import json
import logging
from typing import Dict, Optional

import anthropic

from introengine.config import (ANTHROPIC_API_KEY, COMPLETION_MAX_RETRIES,
                                COMPLETION_MAX_TOKENS, COMPLETION_MODEL,
                                COMPLETION_TIMEOUT_SECONDS)
from introengine.errors import ServiceError

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "Respond with a single JSON object and nothing else."


def parse_json_reply(text: Optional[str]) -> Dict:
    """Parse a model reply as a JSON object, tolerating ```json fences."""
    if not text or not text.strip():
        raise ServiceError("Completion returned an empty reply")
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned.strip("`")
        cleaned = cleaned.rsplit("```", 1)[0].strip()
    try:
        result = json.loads(cleaned)
    except (json.JSONDecodeError, IndexError) as e:
        raise ServiceError(f"Completion reply is not valid JSON: {e}") from e
    if not isinstance(result, dict):
        raise ServiceError(f"Completion reply is {type(result).__name__}, expected an object")
    return result


class AnthropicCompletionService:
    """Claude via the anthropic SDK, with a per-request timeout."""

    def __init__(self, api_key: Optional[str] = None, model: str = COMPLETION_MODEL,
                 max_tokens: int = COMPLETION_MAX_TOKENS,
                 timeout: float = COMPLETION_TIMEOUT_SECONDS,
                 max_retries: int = COMPLETION_MAX_RETRIES, client=None):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._api_key = api_key or ANTHROPIC_API_KEY
        self._max_retries = max_retries
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self._api_key:
                raise ServiceError("ANTHROPIC_API_KEY not set")
            self._client = anthropic.Anthropic(api_key=self._api_key, timeout=self.timeout,
                                               max_retries=self._max_retries)
        return self._client

    def complete(self, system_prompt: str, user_prompt: str) -> Dict:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=f"{system_prompt}\n\n{JSON_INSTRUCTION}",
                messages=[{"role": "user", "content": user_prompt}],
                timeout=self.timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ServiceError(f"Completion timed out after {self.timeout}s") from e
        except anthropic.APIError as e:
            raise ServiceError(f"Completion request failed: {e}") from e

        text = "".join(getattr(block, "text", "") for block in response.content or [])
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(f"Completion used {usage.input_tokens + usage.output_tokens} tokens")
        return parse_json_reply(text)
