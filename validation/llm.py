"""
Chat Client - Thin wrapper over the OpenAI chat completions API.

Sends a text prompt plus labelled PNG images and returns the reply text with
its token usage. Transient SDK failures (timeouts, connection drops, rate
limits, 5xx) are retried with exponential backoff and surface as
AIServiceError once the attempts run out. Any other SDK error (bad key,
bad request, unknown model) surfaces at once as AIRequestError.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import openai
from openai import OpenAI
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from phenology.errors import AIRequestError, AIServiceError
from validation.pricing import TokenUsage

log = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

# (label, base64 PNG)
LabelledImage = Tuple[str, str]


@dataclass
class ChatReply:
    text: str
    usage: TokenUsage


def parse_json_reply(text: str) -> Any:
    """
    JSON body of a model reply, with or without a ``` fence.

    Raises:
        ValueError: the reply is not JSON
    """
    match = _FENCED_JSON.search(text or "")
    body = match.group(1).strip() if match else (text or "").strip()
    return json.loads(body)


class ChatClient:
    """
    Usage:
        client = ChatClient(api_key=os.environ["OPENAI_API_KEY"])
        reply = client.complete("gpt-4o-mini", prompt, images=[("2025-12-01 ndvi", b64)])
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_attempts: int = 2,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 8.0,
        client: OpenAI = None,
    ):
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max

    def _messages(self, prompt: str, images: List[LabelledImage]) -> List[dict]:
        content = [{"type": "text", "text": prompt}]
        for label, b64 in images:
            content.append({"type": "text", "text": f"--- Image: {label} ---"})
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{b64}", "detail": "low"},
            })
        return [{"role": "user", "content": content}]

    def _call_once(self, model: str, messages: List[dict]) -> ChatReply:
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=0.1,
                response_format={"type": "json_object"},
            )
        except TRANSIENT_ERRORS as e:
            log.warning(f"{model} call failed: {type(e).__name__}: {e}")
            raise AIServiceError(f"{model}: {type(e).__name__}") from e
        except openai.OpenAIError as e:
            log.error(f"{model} request rejected: {type(e).__name__}: {e}")
            raise AIRequestError(f"{model}: {type(e).__name__}") from e

        usage = getattr(response, "usage", None)
        return ChatReply(
            text=response.choices[0].message.content or "",
            usage=TokenUsage(
                model=model,
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    def complete(self, model: str, prompt: str, images: List[LabelledImage] = None) -> ChatReply:
        """
        Raises:
            AIServiceError: every attempt hit a transient failure
            AIRequestError: the service rejected the request
        """
        messages = self._messages(prompt, images or [])
        retrying = Retrying(
            retry=retry_if_exception_type(AIServiceError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            reraise=True,
        )
        reply = retrying(self._call_once, model, messages)
        log.debug(f"{model}: {reply.usage.input_tokens} in / {reply.usage.output_tokens} out")
        return reply
