import base64
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import google.generativeai as genai
from google.generativeai import protos
from google.generativeai.types import HarmBlockThreshold, HarmCategory
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

OCR_PROMPT = (
    "Extract all text from this image. If no text is visible, indicate that "
    "no text was found. Transcribe text accurately only."
)
NO_TEXT_FOUND = "No text found or unable to extract text."
SUCCESS_MESSAGE = "Image processed successfully."

# Low temperature keeps transcription deterministic
GENERATION_CONFIG = MappingProxyType({
    "temperature": 0.2,
    "top_k": 1,
    "top_p": 1,
    "max_output_tokens": 2048,
})

SAFETY_SETTINGS = tuple(
    MappingProxyType({"category": category, "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE})
    for category in (
        HarmCategory.HARM_CATEGORY_HARASSMENT,
        HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
)


class OCRServiceError(Exception):
    """Base class for errors rendered as a JSON body by the API."""

    status_code = 500
    error = "Failed to process image."

    def __init__(self, details: Optional[str] = None):
        super().__init__(details or self.error)
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class UploadValidationError(OCRServiceError):
    """The upload was rejected before any model call. Always a 400."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.error = message

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.error}


class UpstreamShapeError(OCRServiceError):
    error = "Failed to process image with Gemini API due to unexpected response structure."

    def __init__(self, details: str = "Gemini API response structure is unexpected."):
        super().__init__(details)


class UpstreamCallError(OCRServiceError):
    """The Gemini call failed, including safety-policy rejections."""

    def __init__(self, details: str, prompt_feedback: Optional[Mapping[str, Any]] = None):
        self.prompt_feedback = prompt_feedback
        super().__init__(details)

    @property
    def error(self) -> str:
        if self.prompt_feedback is not None:
            return "Failed to process image with Gemini API."
        return "Failed to process image."

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.prompt_feedback is not None:
            body["promptFeedback"] = self.prompt_feedback
        return body


@dataclass(frozen=True)
class UploadedImage:
    buffer: bytes
    mime_type: str
    original_filename: str

    @property
    def size_bytes(self) -> int:
        return len(self.buffer)


@dataclass(frozen=True)
class ModelRequest:
    image_part: Mapping[str, Any]
    prompt: str
    generation_config: Mapping[str, Any]
    safety_settings: tuple

    def contents(self) -> List[Dict[str, Any]]:
        """Single-turn conversation: the image followed by the instruction."""
        return [{
            "role": "user",
            "parts": [
                {"inline_data": dict(self.image_part["inline_data"])},
                {"text": self.prompt},
            ],
        }]


class OCRResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = SUCCESS_MESSAGE
    original_filename: str = Field(alias="originalFilename")
    mime_type: str = Field(alias="mimeType")
    extracted_text: str = Field(alias="extractedText")


class ErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str
    details: Optional[str] = None
    prompt_feedback: Optional[Dict[str, Any]] = Field(default=None, alias="promptFeedback")


def file_to_generative_part(buffer: bytes, mime_type: str) -> Dict[str, Any]:
    return {
        "inline_data": {
            "data": base64.b64encode(buffer).decode("ascii"),
            "mime_type": mime_type,
        }
    }


def build_model_request(image: UploadedImage) -> ModelRequest:
    return ModelRequest(
        image_part=MappingProxyType(file_to_generative_part(image.buffer, image.mime_type)),
        prompt=OCR_PROMPT,
        generation_config=GENERATION_CONFIG,
        safety_settings=SAFETY_SETTINGS,
    )


def _plain(value):
    if isinstance(value, Mapping):
        return dict(value)
    to_dict = getattr(type(value), "to_dict", None)
    if callable(to_dict):
        return to_dict(value)
    return value


def _enum_name(enum_type, value):
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_type(value).name
        except ValueError:
            return value
    return value


def _named_feedback(feedback: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the integer enums of ``to_dict()`` output with their names."""
    feedback = dict(feedback)
    for key in ("block_reason", "blockReason"):
        if key in feedback:
            feedback[key] = _enum_name(protos.GenerateContentResponse.PromptFeedback.BlockReason, feedback[key])
    for key in ("safety_ratings", "safetyRatings"):
        if isinstance(feedback.get(key), list):
            ratings = []
            for rating in feedback[key]:
                if isinstance(rating, Mapping):
                    rating = dict(rating)
                    if "category" in rating:
                        rating["category"] = _enum_name(protos.HarmCategory, rating["category"])
                    if "probability" in rating:
                        rating["probability"] = _enum_name(protos.SafetyRating.HarmProbability, rating["probability"])
                ratings.append(rating)
            feedback[key] = ratings
    return feedback


def _block_reason(feedback: Dict[str, Any]):
    reason = feedback.get("block_reason") or feedback.get("blockReason")
    if reason in (None, "", "BLOCK_REASON_UNSPECIFIED"):
        return None
    return reason


def _feedback_from(response) -> Optional[Dict[str, Any]]:
    if response is None:
        return None
    if isinstance(response, Mapping):
        feedback = response.get("prompt_feedback")
        if feedback is None:
            feedback = response.get("promptFeedback")
    else:
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is None:
            feedback = getattr(response, "promptFeedback", None)
    if not feedback:
        return None
    feedback = _plain(feedback)
    if isinstance(feedback, Mapping):
        return _named_feedback(feedback)
    return feedback


def prompt_feedback_of(error: BaseException) -> Optional[Dict[str, Any]]:
    """Return the prompt feedback attached to a failed call's response, if any."""
    return _feedback_from(getattr(error, "response", None))


def _dump(raw) -> str:
    try:
        return json.dumps(raw, indent=2, default=str)
    except (TypeError, ValueError):
        return repr(raw)


def parse_model_response(raw: Any) -> str:
    """
    Validate a generateContent response and return the transcribed text.
    - Raises **UpstreamShapeError** when candidates, content or parts are missing
    - Raises **UpstreamCallError** when the prompt was blocked before any candidate
    - Falls back to the no-text sentence when the first part carries no text
    """
    if not isinstance(raw, Mapping):
        logger.error(f"Gemini API response structure is unexpected: {raw!r}")
        raise UpstreamShapeError()

    candidates = raw.get("candidates")
    if not candidates:
        feedback = _feedback_from(raw)
        reason = _block_reason(feedback) if isinstance(feedback, Mapping) else None
        if reason is not None:
            logger.error(f"Gemini API Prompt Feedback: {feedback}")
            raise UpstreamCallError(f"Prompt was blocked: {reason}", prompt_feedback=feedback)
        logger.error(f"Gemini API response structure is unexpected: {_dump(raw)}")
        raise UpstreamShapeError()

    first = candidates[0]
    content = first.get("content") if isinstance(first, Mapping) else None
    parts = content.get("parts") if isinstance(content, Mapping) else None
    if not isinstance(parts, (list, tuple)):
        logger.error(f"Gemini API response structure is unexpected: {_dump(raw)}")
        raise UpstreamShapeError()

    if parts and isinstance(parts[0], Mapping) and parts[0].get("text"):
        return str(parts[0]["text"]).strip()

    logger.warning(f"Gemini API did not return text in the expected part. Full response: {_dump(raw)}")
    return NO_TEXT_FOUND


def build_result(image: UploadedImage, extracted_text: str) -> OCRResult:
    return OCRResult(
        original_filename=image.original_filename,
        mime_type=image.mime_type,
        extracted_text=extracted_text,
    )


class GeminiOCRClient:
    """One configured Gemini model handle, shared by every request of the process."""

    def __init__(self, api_key: str, model_name: str, request_timeout: Optional[float] = None):
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.request_timeout = request_timeout
        self._model = genai.GenerativeModel(model_name)

    @classmethod
    def from_settings(cls, settings) -> "GeminiOCRClient":
        return cls(
            api_key=settings.require_api_key(),
            model_name=settings.model_name,
            request_timeout=settings.request_timeout,
        )

    async def generate(self, request: ModelRequest) -> Any:
        """Perform exactly one generateContent call and return the response as a dict."""
        request_options = {"timeout": self.request_timeout} if self.request_timeout else None
        try:
            response = await self._model.generate_content_async(
                request.contents(),
                generation_config=dict(request.generation_config),
                safety_settings=[dict(s) for s in request.safety_settings],
                request_options=request_options,
            )
        except Exception as e:
            feedback = prompt_feedback_of(e)
            if feedback is not None:
                logger.error(f"Gemini API Prompt Feedback: {feedback}")
            raise UpstreamCallError(str(e), prompt_feedback=feedback) from e
        return response.to_dict()
