import logging
from typing import Dict, Optional

from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header

from gemini_ocr import UploadedImage, UploadValidationError
from ocr_config import MAX_UPLOAD_BYTES

logger = logging.getLogger(__name__)

IMAGE_FIELD = "imageFile"
# Room for boundaries, part headers and small extra fields around the file
MULTIPART_OVERHEAD = 64 * 1024


def file_too_large(max_bytes: int = MAX_UPLOAD_BYTES) -> UploadValidationError:
    return UploadValidationError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)} MB.")


class _ImagePartCollector:
    """Multipart callbacks that keep the single expected file part in memory."""

    def __init__(self, field_name: str, max_bytes: int):
        self.field_name = field_name
        self.max_bytes = max_bytes
        self.filename: Optional[str] = None
        self.mime_type: Optional[str] = None
        self.buffer: Optional[bytearray] = None
        self.error: Optional[UploadValidationError] = None
        self._headers: Dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._target: Optional[bytearray] = None

    def callbacks(self):
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self):
        self._headers = {}
        self._target = None

    def on_header_field(self, data, start, end):
        self._header_field += data[start:end]

    def on_header_value(self, data, start, end):
        self._header_value += data[start:end]

    def on_header_end(self):
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self):
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        filename = options.get(b"filename")
        if not filename:
            # Plain form fields and empty file inputs are ignored
            return
        name = options.get(b"name", b"").decode("latin-1")
        if name != self.field_name or self.buffer is not None:
            self._fail(UploadValidationError("Unexpected field"))
            return
        self.filename = filename.decode("utf-8", errors="replace")
        self.mime_type = self._headers.get(b"content-type", b"").decode("latin-1").strip()
        if not self.mime_type.startswith("image/"):
            self._fail(UploadValidationError("Not an image! Please upload an image file."))
            return
        self.buffer = bytearray()
        self._target = self.buffer

    def on_part_data(self, data, start, end):
        if self._target is None:
            return
        self._target.extend(data[start:end])
        if len(self._target) > self.max_bytes:
            self._fail(file_too_large(self.max_bytes))

    def on_part_end(self):
        self._target = None

    def _fail(self, error: UploadValidationError):
        if self.error is None:
            self.error = error
        self._target = None


async def read_image_upload(request, field_name: str = IMAGE_FIELD, max_bytes: int = MAX_UPLOAD_BYTES) -> UploadedImage:
    """
    Stream a multipart body into memory and return the single uploaded image.
    - Rejects a declared Content-Length past the limit before reading the body
    - Stops reading as soon as the file or the whole body grows past the limit
    - Never spools to a temporary file
    """
    content_type, params = parse_options_header(request.headers.get("content-type", ""))
    if content_type.lower() != b"multipart/form-data":
        raise UploadValidationError("No image file uploaded.")
    boundary = params.get(b"boundary")
    if not boundary:
        raise UploadValidationError("Malformed upload request.")

    body_limit = max_bytes + MULTIPART_OVERHEAD
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > body_limit:
        logger.warning(f"Rejected upload with Content-Length {content_length}")
        raise file_too_large(max_bytes)

    collector = _ImagePartCollector(field_name, max_bytes)
    parser = MultipartParser(boundary, collector.callbacks())
    received = 0
    try:
        async for chunk in request.stream():
            received += len(chunk)
            if received > body_limit:
                raise file_too_large(max_bytes)
            parser.write(chunk)
            if collector.error is not None:
                raise collector.error
        parser.finalize()
    except MultipartParseError as e:
        logger.warning(f"Rejected malformed upload: {str(e)}")
        raise UploadValidationError("Malformed upload request.") from e
    if collector.error is not None:
        raise collector.error

    if collector.buffer is None:
        raise UploadValidationError("No image file uploaded.")
    image = UploadedImage(
        buffer=bytes(collector.buffer),
        mime_type=collector.mime_type,
        original_filename=collector.filename,
    )
    logger.info(f"Received image: {image.original_filename} MIME type: {image.mime_type} Size: {image.size_bytes}")
    return image
