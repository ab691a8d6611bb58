# cerebr/core/errors.py

from typing import Optional


class CerebrError(RuntimeError):
    """Base class for every error raised by the chat engine."""


class NotFoundError(CerebrError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat {chat_id!r} does not exist.")
        self.chat_id = chat_id


class NoActiveChatError(CerebrError):
    def __init__(self) -> None:
        super().__init__("No chat is currently selected.")


class ChatBusyError(CerebrError):
    def __init__(self) -> None:
        super().__init__("A reply is already being generated.")


class StorageFailure(CerebrError):
    """A store call was rejected. Raised once per failed flush."""


class StreamAborted(CerebrError):
    """The user cancelled a streaming reply. Never surfaced as a failure."""


class MisfiledReasoning(CerebrError):
    """
    The model started its visible answer with a reasoning marker, i.e. it put
    its "thinking" tokens in `content` instead of `reasoning_content`.
    """

    def __init__(self, marker: str, head: str) -> None:
        super().__init__(f"Reply content starts with reasoning marker {marker!r}.")
        self.marker = marker
        self.head = head


class MalformedChunk(CerebrError):
    """A single SSE data line could not be parsed."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Malformed stream chunk ({reason}): {line[:120]!r}")
        self.line = line
        self.reason = reason


class CompletionRequestError(CerebrError):
    def __init__(self, status_code: int, body: str, req_id: Optional[str] = None) -> None:
        super().__init__(f"Completion request failed with status {status_code}: {body[:400]}")
        self.status_code = status_code
        self.body = body
        self.req_id = req_id
