import logging
import sys
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gemini_ocr import (
    ErrorResponse,
    GeminiOCRClient,
    OCRResult,
    OCRServiceError,
    UploadedImage,
    UpstreamCallError,
    build_model_request,
    build_result,
    parse_model_response,
    prompt_feedback_of,
)
from ocr_config import ConfigurationError, Settings, load_settings
from ocr_upload import IMAGE_FIELD, read_image_upload

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_REQUEST_BODY = {
    "required": True,
    "content": {
        "multipart/form-data": {
            "schema": {
                "type": "object",
                "properties": {IMAGE_FIELD: {"type": "string", "format": "binary"}},
                "required": [IMAGE_FIELD],
            }
        }
    },
}


def get_ocr_client(request: Request) -> Optional[GeminiOCRClient]:
    return request.app.state.ocr_client


async def extract_text(image: UploadedImage, client: Optional[GeminiOCRClient]) -> OCRResult:
    """Translate the upload, call Gemini once and translate the answer back."""
    if client is None:
        raise UpstreamCallError("Gemini client is not configured.")
    try:
        model_request = build_model_request(image)
        logger.info("Sending request to Gemini API...")
        raw = await client.generate(model_request)
        extracted_text = parse_model_response(raw)
    except OCRServiceError:
        raise
    except Exception as e:
        logger.exception(f"Error processing image with Gemini API: {str(e)}")
        raise UpstreamCallError(str(e), prompt_feedback=prompt_feedback_of(e)) from e
    logger.info("Gemini API response received.")
    return build_result(image, extracted_text)


@router.post(
    "/upload-ocr",
    response_model=OCRResult,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    openapi_extra={"requestBody": UPLOAD_REQUEST_BODY},
)
async def upload_ocr(
    request: Request,
    client: Optional[GeminiOCRClient] = Depends(get_ocr_client),
):
    """
    Transcribe the text in an uploaded image.
    - **imageFile**: image file to process, at most 10 MB
    """
    image = await read_image_upload(request)
    return await extract_text(image, client)


@router.get("/health")
async def health_check(client: Optional[GeminiOCRClient] = Depends(get_ocr_client)):
    """Health check endpoint to verify if the service is running"""
    return {"status": "healthy", "model_loaded": client is not None}


async def ocr_error_handler(request: Request, exc: OCRServiceError):
    if exc.status_code >= 500:
        logger.error(f"Error processing image: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def create_app(settings: Optional[Settings] = None, client: Optional[GeminiOCRClient] = None) -> FastAPI:
    app = FastAPI(
        title="Gemini OCR API",
        description="API that transcribes the text of an uploaded image with a Gemini vision model",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.ocr_client = client

    @app.on_event("startup")
    def load_model():
        if app.state.ocr_client is not None:
            return
        if app.state.settings is None:
            app.state.settings = load_settings()
        model_name = app.state.settings.model_name
        logger.info(f"Loading Gemini model {model_name}")
        try:
            app.state.ocr_client = GeminiOCRClient.from_settings(app.state.settings)
        except ConfigurationError as e:
            logger.critical(f"Error: {str(e)}")
            raise
        logger.info("Gemini API Key loaded successfully.")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down application")

    app.add_exception_handler(OCRServiceError, ocr_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    try:
        settings = load_settings()
        settings.require_api_key()
    except ConfigurationError as e:
        logger.critical(f"Error: {str(e)}")
        sys.exit(1)
    logging.getLogger().setLevel(settings.log_level)
    logger.info(f"Server is running on http://localhost:{settings.port}")
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
