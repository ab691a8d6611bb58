# cerebr/core/messages.py

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from cerebr.memory.models import (
    Content,
    ContentPart,
    ImagePart,
    Message,
    TextPart,
    content_to_json,
)

USER_LANGUAGE_PLACEHOLDER = re.compile(r"\{\{userLanguage\}\}")

_MARKDOWN_DATA_IMAGE = re.compile(
    r"!\[[^\]]*\]\(\s*(data:image/[A-Za-z0-9.+-]+;base64,)([A-Za-z0-9+/=_\-\s]+?)\s*"
    r"(?:\"[^\"]*\"|'[^']*')?\s*\)"
)
_HTML_DATA_IMAGE = re.compile(
    r"<img\b[^>]*\bsrc\s*=\s*[\"'](data:image/[A-Za-z0-9.+-]+;base64,)([A-Za-z0-9+/=_\-\s]+)[\"'][^>]*>",
    re.IGNORECASE,
)


@dataclass
class WebpageInfo:
    title: str
    url: str
    content: str


def _split_with(pattern: "re.Pattern[str]", text: str) -> Optional[List[ContentPart]]:
    parts: List[ContentPart] = []
    last = 0
    matched = False
    for match in pattern.finditer(text):
        matched = True
        segment = text[last:match.start()]
        if segment.strip():
            parts.append(TextPart(text=segment))
        data = re.sub(r"\s+", "", match.group(2))
        if data:
            parts.append(ImagePart(url=match.group(1) + data))
        last = match.end()
    if not matched:
        return None
    tail = text[last:]
    if tail.strip():
        parts.append(TextPart(text=tail))
    return parts or None


def split_data_images(text: str) -> Optional[List[ContentPart]]:
    """
    Turn markdown (![alt](data:image/...)) or HTML (<img src="data:image/...">)
    embedded images into content parts. Returns None when the text carries no
    data-url image. Markdown wins when both forms are present.
    """
    if not text:
        return None
    return _split_with(_MARKDOWN_DATA_IMAGE, text) or _split_with(_HTML_DATA_IMAGE, text)


def build_user_content(text: str, images: Sequence[str] = ()) -> Content:
    """Content for a new user turn: plain text, or text plus image parts."""
    if not images:
        return text
    parts: List[ContentPart] = []
    if text.strip():
        parts.append(TextPart(text=text))
    parts.extend(ImagePart(url=url) for url in images)
    return parts


def _outgoing(message: Union[Message, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(message, Message):
        role, content = message.role, message.content
    else:
        role, content = message.get("role"), message.get("content")

    out: Dict[str, Any] = {"role": role, "content": content_to_json(content) if content is not None else ""}
    if role != "system" and isinstance(out["content"], str):
        parts = split_data_images(out["content"])
        if parts:
            out["content"] = content_to_json(parts)
    return out


def build_system_message(
    system_prompt: str,
    user_language: str,
    webpage_info: Optional[WebpageInfo] = None,
) -> Optional[Dict[str, str]]:
    prompt = USER_LANGUAGE_PLACEHOLDER.sub(lambda _m: user_language, system_prompt or "")
    if webpage_info is not None:
        prompt += (
            "\nCurrent webpage:\n"
            f"Title: {webpage_info.title}\n"
            f"URL: {webpage_info.url}\n"
            f"Content: {webpage_info.content}"
        )
    if not prompt.strip():
        return None
    return {"role": "system", "content": prompt}


def prepare_messages(
    messages: Sequence[Union[Message, Dict[str, Any]]],
    system_prompt: str = "",
    user_language: str = "en",
    webpage_info: Optional[WebpageInfo] = None,
) -> List[Dict[str, Any]]:
    """
    Wire-format history for a chat completion request.

    Only role and content are sent (reasoning and streaming flags stay
    local). A system message is prepended when there is something to say
    and the history does not already open with one.
    """
    prepared = [_outgoing(m) for m in messages]
    system = build_system_message(system_prompt, user_language, webpage_info)
    if system is not None and (not prepared or prepared[0]["role"] != "system"):
        prepared.insert(0, system)
    return prepared
