# cerebr/clients/sse.py

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Tuple

from cerebr.core.errors import MalformedChunk

DONE_SENTINEL = "[DONE]"


class LineDecoder:
    """
    Incremental bytes -> lines decoder.

    UTF-8 sequences split across chunks are held back until complete, and a
    partial trailing line is buffered until its newline arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.rstrip("\r")
        return [tail] if tail.strip() else []


def data_of(line: str):
    """Payload of a `data:` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):]
    if data.startswith(" "):
        data = data[1:]
    return data


def parse_chunk(data: str) -> Dict[str, Any]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedChunk(data, f"invalid JSON: {e.msg}") from e
    if not isinstance(payload, dict):
        raise MalformedChunk(data, "payload is not an object")
    return payload


def delta_of(payload: Dict[str, Any]) -> Tuple[str, str]:
    """(content, reasoning_content) fragments of choices[0].delta; missing parts are ''."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return "", ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return "", ""
    content = delta.get("content")
    reasoning = delta.get("reasoning_content")
    return (
        content if isinstance(content, str) else "",
        reasoning if isinstance(reasoning, str) else "",
    )


async def iter_sse_data(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield the payload of every `data:` line, skipping the [DONE] sentinel."""
    decoder = LineDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            data = data_of(line)
            if data is not None and data.strip() != DONE_SENTINEL:
                yield data
    for line in decoder.flush():
        data = data_of(line)
        if data is not None and data.strip() != DONE_SENTINEL:
            yield data
