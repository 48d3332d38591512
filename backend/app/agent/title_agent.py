import logging

from openai import OpenAIError

from app.agent.base import BaseAgent
from app.agent.prompts.chat import TITLE_SYSTEM_PROMPT
from app.core.config import settings

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 80
FALLBACK_TITLE = "New Chat"
_STRIP_CHARS = "\"'`“”‘’ \n\t"


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    if title.lower().startswith("title:"):
        title = title[len("title:"):]
    title = title.strip(_STRIP_CHARS)
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip()
    return title or FALLBACK_TITLE


class TitleAgent(BaseAgent[str, str]):
    def __init__(self, model_name: str | None = None, **kwargs):
        super().__init__(model_name=model_name or settings.MODEL_TITLE, **kwargs)

    async def run(self, input_data: str) -> str:
        if not input_data.strip():
            return FALLBACK_TITLE
        try:
            raw = await self.llm.generate_text(TITLE_SYSTEM_PROMPT.strip(), input_data[:2000])
        except (OpenAIError, ValueError) as exc:
            logger.warning("Title generation failed, using fallback: %s", exc)
            return FALLBACK_TITLE
        return clean_title(raw)


async def generate_chat_title(first_message: str) -> str:
    try:
        agent = TitleAgent()
    except OpenAIError as exc:
        logger.warning("Title model unavailable, using fallback: %s", exc)
        return FALLBACK_TITLE
    return await agent.run(first_message)
