import logging

import pytest
from fastapi.testclient import TestClient

from fastapi_inference import create_app
from ocr_config import Settings


class FakeOCRClient:
    """Stands in for GeminiOCRClient: records requests and replays a canned answer."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def text_response(text):
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"text": text}]}, "finish_reason": "STOP"}
        ],
        "prompt_feedback": {},
    }


@pytest.fixture
def fake_client():
    return FakeOCRClient(response=text_response("Hello"))


@pytest.fixture
def client(fake_client):
    app = create_app(settings=Settings(gemini_api_key="test-key"), client=fake_client)
    return TestClient(app)


@pytest.fixture
def png_bytes():
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture(autouse=True)
def _log_level(caplog):
    caplog.set_level(logging.INFO)


BOUNDARY = "ocrtestboundary"


def multipart_body(content, filename="receipt.png", mime_type="image/png", field="imageFile", boundary=BOUNDARY):
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode()
    return head + content + f"\r\n--{boundary}--\r\n".encode()


class StreamedRequest:
    """Minimal request exposing headers and a chunked body, counting the chunks read."""

    def __init__(self, body, headers=None, chunk_size=1024 * 1024, boundary=BOUNDARY):
        self.body = body
        self.chunk_size = chunk_size
        self.chunks_read = 0
        self.headers = {"content-type": f"multipart/form-data; boundary={boundary}"}
        self.headers.update(headers or {})

    async def stream(self):
        for start in range(0, len(self.body), self.chunk_size):
            self.chunks_read += 1
            yield self.body[start:start + self.chunk_size]
