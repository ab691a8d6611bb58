# cerebr/core/titles.py

from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from cerebr.clients.openai_client import ApiConfig, complete_json
from cerebr.memory.models import Message, content_text
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

TITLE_HISTORY_MESSAGES = 2
MAX_TITLE_CHARS = 80

SUMMARY_PROMPT = """### Task:
Generate a concise, 3-5 word title start with an emoji summarizing the chat history.
### Guidelines:
- The title should clearly represent the main theme or subject of the conversation.
- Use emojis that enhance understanding of the topic, but avoid quotation marks or special formatting.
- Write the title in the chat's primary language; default to English if multilingual.
- Prioritize accuracy over excessive creativity; keep it clear and simple.
### Output:
JSON format: { "title": "your concise title here" }
### Examples:
- { "title": "📉 Stock Market Trends" },
- { "title": "🍪 Perfect Chocolate Chip Recipe" },
- { "title": "🎮 Video Game Development Insights" }
### Chat History:
<chat_history>
{history}
</chat_history>
"""

CompleteJson = Callable[[List[Dict[str, str]], ApiConfig], Awaitable[Dict]]


def build_title_prompt(messages: Sequence[Message]) -> str:
    history = "\n".join(
        f"{m.role}: {content_text(m.content)}" for m in messages[:TITLE_HISTORY_MESSAGES]
    )
    return SUMMARY_PROMPT.replace("{history}", history)


async def generate_title(
    messages: Sequence[Message],
    api_config: ApiConfig,
    complete: CompleteJson = complete_json,
) -> Optional[str]:
    """
    Ask the model for a short title. Titles are cosmetic: any failure is
    logged and yields None.
    """
    if not messages:
        return None
    prompt = build_title_prompt(messages)
    try:
        data = await complete([{"role": "user", "content": prompt}], api_config)
    except Exception as e:
        logger.warning("Title generation failed: %s", e)
        return None

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        logger.info("Title generation returned no usable title: %r", data)
        return None
    return title.strip()[:MAX_TITLE_CHARS]
