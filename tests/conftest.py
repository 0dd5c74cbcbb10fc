import base64
import json
import struct
import zlib
from typing import Dict, List, Optional

import pytest

JPEG_BYTES = bytes([0xFF, 0xD8, 0xFF, 0xE0]) + b"imago-test-image"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.reason = "Not Found" if status_code == 404 else ""

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """Replays queued responses (or raises queued exceptions) for each post."""

    def __init__(self, responses: List[object]):
        self._responses = list(responses)
        self.calls: List[Dict[str, object]] = []
        self.closed = False

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


class StubClient:
    """Stand-in for GeminiClient that returns scripted outcomes per model."""

    def __init__(self, outcomes: Dict[str, object]):
        self.outcomes = outcomes
        self.calls: List[str] = []

    def attempt(self, prompt, model):
        self.calls.append(model)
        return self.outcomes[model]

    def close(self):
        pass


def image_payload(data: bytes = JPEG_BYTES, mime_type: str = "image/jpeg", text: Optional[str] = None):
    parts = []
    if text is not None:
        parts.append({"text": text})
    parts.append({"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}})
    return {"candidates": [{"content": {"parts": parts}, "finishReason": "STOP"}]}


def oversized_png(width=30000, height=30000):
    """A PNG whose header declares dimensions past Pillow's pixel limit."""

    def chunk(kind, data):
        body = kind + data
        return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(b""))
        + chunk(b"IEND", b"")
    )


@pytest.fixture
def jpeg_bytes():
    return JPEG_BYTES
