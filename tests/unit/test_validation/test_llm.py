import httpx
import openai
import pytest
from unittest.mock import MagicMock

from phenology.errors import AIRequestError, AIServiceError
from validation.llm import ChatClient, parse_json_reply


def _completion(text, prompt_tokens=100, completion_tokens=20):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    return response


def _timeout():
    return openai.APITimeoutError(request=httpx.Request("POST", "http://ai.test"))


def test_parse_json_reply_variants():
    assert parse_json_reply('{"a": 1}') == {"a": 1}
    assert parse_json_reply('Here:\n```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_reply('```\n[1, 2]\n```') == [1, 2]
    with pytest.raises(ValueError):
        parse_json_reply("not json at all")


def test_complete_returns_text_and_usage():
    """Verify reply text and token counts come back with the model name."""
    openai_client = MagicMock()
    openai_client.chat.completions.create.return_value = _completion('{"ok": true}')
    client = ChatClient(client=openai_client)

    reply = client.complete("gpt-4o-mini", "prompt", images=[("2025-12-01 - ndvi", "AAAA")])

    assert reply.text == '{"ok": true}'
    assert reply.usage.model == "gpt-4o-mini"
    assert reply.usage.input_tokens == 100
    messages = openai_client.chat.completions.create.call_args[1]["messages"]
    content = messages[0]["content"]
    assert content[0] == {"type": "text", "text": "prompt"}
    assert content[2]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_complete_retries_transient_errors():
    """Verify a transient failure is retried and the second attempt wins."""
    openai_client = MagicMock()
    openai_client.chat.completions.create.side_effect = [_timeout(), _completion("{}")]
    client = ChatClient(client=openai_client, max_attempts=2, backoff_multiplier=0)

    reply = client.complete("gpt-4o", "prompt")

    assert reply.text == "{}"
    assert openai_client.chat.completions.create.call_count == 2


def test_complete_exhausted_raises():
    openai_client = MagicMock()
    openai_client.chat.completions.create.side_effect = _timeout()
    client = ChatClient(client=openai_client, max_attempts=2, backoff_multiplier=0)

    with pytest.raises(AIServiceError):
        client.complete("gpt-4o", "prompt")
    assert openai_client.chat.completions.create.call_count == 2


def _rejected(status=401):
    request = httpx.Request("POST", "http://ai.test")
    return openai.AuthenticationError(
        message="invalid api key", response=httpx.Response(status, request=request), body=None
    )


def test_rejected_request_is_not_retried():
    """Verify an authentication failure raises AIRequestError after one attempt."""
    openai_client = MagicMock()
    openai_client.chat.completions.create.side_effect = _rejected()
    client = ChatClient(client=openai_client, max_attempts=3, backoff_multiplier=0)

    with pytest.raises(AIRequestError) as exc:
        client.complete("gpt-4o", "prompt")
    assert "AuthenticationError" in str(exc.value)
    assert openai_client.chat.completions.create.call_count == 1
