from unittest.mock import AsyncMock, patch

import httpx
import pytest
from openai import APIConnectionError, OpenAIError

from app.agent.title_agent import FALLBACK_TITLE, TitleAgent, clean_title, generate_chat_title


def test_clean_title_strips_prefix_quotes_and_extra_lines():
    assert clean_title('Title: "Dragon Story Plans"\nSecond line') == "Dragon Story Plans"


def test_clean_title_truncates_long_titles():
    title = clean_title("x" * 120)
    assert len(title) == 80


def test_clean_title_falls_back_when_empty():
    assert clean_title("  \n ") == FALLBACK_TITLE
    assert clean_title('""') == FALLBACK_TITLE


@pytest.mark.asyncio
async def test_title_agent_cleans_model_output():
    with patch("app.agent.llm_client.AsyncOpenAI"):
        agent = TitleAgent()
    agent.llm.generate_text = AsyncMock(return_value="'Planning a Fantasy Novel'")

    title = await agent.run("Help me plan a fantasy novel about dragons")

    assert title == "Planning a Fantasy Novel"
    _, user_prompt = agent.llm.generate_text.call_args.args
    assert user_prompt.startswith("Help me plan")


@pytest.mark.asyncio
async def test_title_agent_returns_fallback_on_provider_error():
    with patch("app.agent.llm_client.AsyncOpenAI"):
        agent = TitleAgent()
    agent.llm.generate_text = AsyncMock(
        side_effect=APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
    )

    assert await agent.run("Hello there") == FALLBACK_TITLE


@pytest.mark.asyncio
async def test_title_agent_skips_model_for_blank_input():
    with patch("app.agent.llm_client.AsyncOpenAI"):
        agent = TitleAgent()
    agent.llm.generate_text = AsyncMock()

    assert await agent.run("   ") == FALLBACK_TITLE
    agent.llm.generate_text.assert_not_called()


@pytest.mark.asyncio
async def test_generate_chat_title_falls_back_without_llm_credentials():
    with patch("app.agent.title_agent.TitleAgent", side_effect=OpenAIError("api_key must be set")):
        assert await generate_chat_title("Help me name a dragon") == FALLBACK_TITLE
