# cerebr/memory/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


def now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-05-01T10:00:00.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


ROLES = ("system", "user", "assistant")


@dataclass
class TextPart:
    text: str
    type: str = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImagePart:
    url: str
    type: str = "image_url"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": self.url}}


ContentPart = Union[TextPart, ImagePart]
Content = Union[str, List[ContentPart]]


def content_part_from_dict(raw: Dict[str, Any]) -> ContentPart:
    kind = raw.get("type")
    if kind == "text":
        return TextPart(text=str(raw.get("text") or ""))
    if kind == "image_url":
        image = raw.get("image_url") or {}
        return ImagePart(url=str(image.get("url") or ""))
    raise ValueError(f"Unknown content part type: {kind!r}")


def content_to_json(content: Content) -> Union[str, List[Dict[str, Any]]]:
    if isinstance(content, str):
        return content
    return [part.to_dict() for part in content]


def content_from_json(raw: Any) -> Content:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return [content_part_from_dict(item) for item in raw]
    raise ValueError(f"Unsupported message content: {raw!r}")


def content_text(content: Content) -> str:
    """Plain text of a message; image parts are skipped."""
    if isinstance(content, str):
        return content
    return "".join(part.text for part in content if isinstance(part, TextPart))


@dataclass
class Message:
    role: str            # 'system', 'user' or 'assistant'
    content: Content = ""
    reasoning_content: Optional[str] = None
    updating: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": content_to_json(self.content)}
        if self.reasoning_content is not None:
            data["reasoning_content"] = self.reasoning_content
        if self.updating:
            data["updating"] = True
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Message":
        role = raw.get("role")
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        return cls(
            role=role,
            content=content_from_json(raw.get("content")),
            reasoning_content=raw.get("reasoning_content"),
            updating=bool(raw.get("updating", False)),
        )


@dataclass
class RefEntry:
    key: str
    updated_at: str
    video_id: Optional[str] = None
    lang: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"key": self.key, "updatedAt": self.updated_at}
        if self.video_id is not None:
            data["videoId"] = self.video_id
        if self.lang is not None:
            data["lang"] = self.lang
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RefEntry":
        return cls(
            key=str(raw["key"]),
            updated_at=str(raw.get("updatedAt") or ""),
            video_id=raw.get("videoId"),
            lang=raw.get("lang"),
        )


@dataclass
class Chat:
    id: str
    title: str
    created_at: str
    updated_at: str
    messages: List[Message] = field(default_factory=list)
    transcript_refs: Optional[List[RefEntry]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.transcript_refs is not None:
            data["transcriptRefs"] = [r.to_dict() for r in self.transcript_refs]
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Chat":
        created_at = str(raw.get("createdAt") or now_iso())
        refs = raw.get("transcriptRefs")
        return cls(
            id=str(raw["id"]),
            title=str(raw.get("title") or ""),
            created_at=created_at,
            # Legacy chats predate updatedAt
            updated_at=str(raw.get("updatedAt") or created_at),
            messages=[Message.from_dict(m) for m in raw.get("messages") or []],
            transcript_refs=[RefEntry.from_dict(r) for r in refs] if isinstance(refs, list) else None,
        )

    def touch(self) -> None:
        self.updated_at = now_iso()

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None
