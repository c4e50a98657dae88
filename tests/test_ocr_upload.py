import asyncio
import tempfile

import pytest

import starlette.formparsers
from gemini_ocr import UploadValidationError
from ocr_config import MAX_UPLOAD_BYTES
from ocr_upload import MULTIPART_OVERHEAD, read_image_upload
from conftest import BOUNDARY, StreamedRequest, multipart_body


def read(request):
    return asyncio.run(read_image_upload(request))


def test_reads_image_into_memory():
    request = StreamedRequest(multipart_body(b"\x89PNG" + b"\x01" * 100, filename="scan.png"), chunk_size=7)
    image = read(request)
    assert image.buffer == b"\x89PNG" + b"\x01" * 100
    assert isinstance(image.buffer, bytes)
    assert image.original_filename == "scan.png"
    assert image.mime_type == "image/png"
    assert image.size_bytes == 104


def test_ignores_plain_fields():
    plain = (
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="note"\r\n\r\n'
        "hello\r\n"
    ).encode()
    image = read(StreamedRequest(plain + multipart_body(b"img")))
    assert image.buffer == b"img"


def test_declared_oversize_rejected_before_reading():
    request = StreamedRequest(b"", headers={"content-length": str(40 * 1024 * 1024)})
    with pytest.raises(UploadValidationError) as info:
        read(request)
    assert "File too large" in info.value.error
    assert request.chunks_read == 0


def test_undeclared_oversize_stops_at_limit():
    body = multipart_body(b"\x00" * (40 * 1024 * 1024))
    request = StreamedRequest(body, chunk_size=1024 * 1024)
    with pytest.raises(UploadValidationError) as info:
        read(request)
    assert "File too large" in info.value.error
    assert request.chunks_read <= (MAX_UPLOAD_BYTES + MULTIPART_OVERHEAD) // (1024 * 1024) + 2


def test_non_image_rejected_before_body_is_read():
    body = multipart_body(b"\x00" * (5 * 1024 * 1024), filename="notes.txt", mime_type="text/plain")
    request = StreamedRequest(body, chunk_size=64 * 1024)
    with pytest.raises(UploadValidationError) as info:
        read(request)
    assert info.value.error == "Not an image! Please upload an image file."
    assert request.chunks_read == 1


def test_second_file_rejected():
    body = multipart_body(b"one")[: -len(f"--{BOUNDARY}--\r\n")] + multipart_body(b"two")
    with pytest.raises(UploadValidationError) as info:
        read(StreamedRequest(body))
    assert info.value.error == "Unexpected field"


def test_file_under_other_field_rejected():
    with pytest.raises(UploadValidationError) as info:
        read(StreamedRequest(multipart_body(b"img", field="picture")))
    assert info.value.error == "Unexpected field"


def test_missing_boundary():
    request = StreamedRequest(b"", headers={"content-type": "multipart/form-data"})
    with pytest.raises(UploadValidationError) as info:
        read(request)
    assert info.value.error == "Malformed upload request."


def test_not_multipart():
    request = StreamedRequest(b"imageFile=x", headers={"content-type": "application/x-www-form-urlencoded"})
    with pytest.raises(UploadValidationError) as info:
        read(request)
    assert info.value.error == "No image file uploaded."


def _no_temp_files(*args, **kwargs):
    raise AssertionError("upload was spooled to a temporary file")


def test_upload_never_touches_disk(client, fake_client, monkeypatch):
    monkeypatch.setattr(starlette.formparsers, "SpooledTemporaryFile", _no_temp_files)
    monkeypatch.setattr(tempfile, "SpooledTemporaryFile", _no_temp_files)
    content = b"\x89PNG" + b"\x02" * (3 * 1024 * 1024)
    response = client.post("/upload-ocr", files={"imageFile": ("big.png", content, "image/png")})
    assert response.status_code == 200
    assert fake_client.requests[0].image_part["inline_data"]["mime_type"] == "image/png"
