"""Tests for per-bot LLM proxy keys."""

import asyncio
import json

import httpx
import pytest

from botcloud import litellm
from botcloud.settings import set_setting


@pytest.fixture
def master_key():
    set_setting("litellm.master_key", "sk-master")
    set_setting("litellm.base_url", "http://proxy.internal:4000/")


def test_not_configured_without_master_key():
    assert not litellm.is_configured()


def test_create_bot_key(master_key, mock_httpx):
    seen = mock_httpx(lambda request: httpx.Response(200, json={"key": "sk-bot"}))

    key = asyncio.run(litellm.create_bot_key("bot-1", "user-1"))

    assert key == "sk-bot"
    request = seen[0]
    assert str(request.url) == "http://proxy.internal:4000/key/generate"
    assert request.headers["Authorization"] == "Bearer sk-master"
    body = json.loads(request.content)
    assert body["key_name"] == "bot-bot-1"
    assert body["metadata"]["bot_id"] == "bot-1"
    assert body["models"] == litellm.ALLOWED_MODELS


def test_create_bot_key_without_key_in_response(master_key, mock_httpx):
    mock_httpx(lambda request: httpx.Response(200, json={}))
    with pytest.raises(litellm.LiteLLMError, match="did not include a key"):
        asyncio.run(litellm.create_bot_key("bot-1", "user-1"))


def test_delete_bot_key(master_key, mock_httpx):
    seen = mock_httpx(lambda request: httpx.Response(200, json={"deleted_keys": ["sk-bot"]}))
    asyncio.run(litellm.delete_bot_key("sk-bot"))
    assert str(seen[0].url) == "http://proxy.internal:4000/key/delete"
    assert json.loads(seen[0].content) == {"keys": ["sk-bot"]}


def test_delete_bot_key_error(master_key, mock_httpx):
    mock_httpx(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(litellm.LiteLLMError, match="HTTP 500"):
        asyncio.run(litellm.delete_bot_key("sk-bot"))


def test_calls_fail_without_master_key():
    with pytest.raises(litellm.LiteLLMError, match="not configured"):
        asyncio.run(litellm.delete_bot_key("sk-bot"))


def test_only_key_lifecycle_is_exposed():
    assert not hasattr(litellm, "get_key_info")
    assert not hasattr(litellm, "get_key_spend")
