from fastapi import Depends, FastAPI, UploadFile, File, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import logging
from datetime import datetime
from typing import List, Optional

from config import ServiceConfig
from models import (
    APIError,
    HealthCheck,
    LanguagesResponse,
    RawImage,
    ReceiptDraft,
    RecognitionLevel,
    RecognitionResponse,
    ScanSessionResponse,
)
from services.image_processor import ReceiptImageProcessor
from services.ocr_service import OCRService
from services.scan_workflow import ScanWorkflow
from services.exceptions import (
    OCRError,
    ImageProcessingError,
    ImageConversionError,
    NoTextFoundError,
    RecognitionCancelledError,
    RecognitionFailedError,
    ScanInProgressError,
    ValidationError,
)

config = ServiceConfig()
config.validate()

# Configure logging
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Receipt Scanner OCR Backend",
    description="Recognizes text lines on multi-page receipt scans",
    version="1.0.0",
    docs_url=None if config.is_production else "/docs",
    redoc_url=None if config.is_production else "/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Initialize OCR service and scan workflow
image_processor = ReceiptImageProcessor()
ocr_service = OCRService(
    image_processor=image_processor,
    languages=config.languages,
    recognition_level=RecognitionLevel(config.recognition_level),
    uses_language_correction=config.uses_language_correction,
)
scan_workflow = ScanWorkflow(ocr_service)

# Supported file types
SUPPORTED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/bmp",
    "image/tiff",
    "image/webp",
}


def get_config() -> ServiceConfig:
    return config


def get_image_processor() -> ReceiptImageProcessor:
    return image_processor


def get_ocr_service() -> OCRService:
    return ocr_service


def get_scan_workflow() -> ScanWorkflow:
    return scan_workflow


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests for monitoring"""
    start_time = datetime.now()

    logger.info(f"Request: {request.method} {request.url}")

    response = await call_next(request)

    process_time = datetime.now() - start_time
    logger.info(
        f"Response: {response.status_code} - Time: {process_time.total_seconds():.2f}s"
    )

    return response


def _error_response(status_code: int, exc: OCRError, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIError(
            error=exc.message, details=exc.details, error_code=error_code
        ).model_dump(),
    )


@app.exception_handler(OCRError)
async def ocr_error_handler(request: Request, exc: OCRError):
    """Handle OCR-specific errors"""
    logger.error(f"OCR Error: {exc.message} - Details: {exc.details}")
    return _error_response(422, exc, "OCR_FAILED")


@app.exception_handler(ImageProcessingError)
async def image_processing_error_handler(request: Request, exc: ImageProcessingError):
    """Handle undecodable uploads"""
    logger.error(f"Image Processing Error: {exc.message}")
    return _error_response(400, exc, "IMAGE_PROCESSING_FAILED")


@app.exception_handler(ImageConversionError)
async def image_conversion_error_handler(request: Request, exc: ImageConversionError):
    """Handle images the engine cannot read"""
    logger.error(f"Image Conversion Error: {exc.details}")
    return _error_response(400, exc, "IMAGE_CONVERSION_FAILED")


@app.exception_handler(NoTextFoundError)
async def no_text_error_handler(request: Request, exc: NoTextFoundError):
    """Handle images without recognizable text"""
    logger.info(f"No text found: {exc.details}")
    return _error_response(422, exc, "NO_TEXT_FOUND")


@app.exception_handler(RecognitionFailedError)
async def recognition_error_handler(request: Request, exc: RecognitionFailedError):
    """Handle engine failures"""
    logger.error(f"Recognition Error: {exc.message}")
    return _error_response(502, exc, "RECOGNITION_FAILED")


@app.exception_handler(RecognitionCancelledError)
async def cancelled_error_handler(request: Request, exc: RecognitionCancelledError):
    """Handle cancelled recognition"""
    logger.warning(f"Recognition cancelled: {exc.details}")
    return _error_response(409, exc, "CANCELLED")


@app.exception_handler(ScanInProgressError)
async def scan_in_progress_handler(request: Request, exc: ScanInProgressError):
    """Handle overlapping scan batches"""
    logger.warning(f"Scan rejected: {exc.details}")
    return _error_response(409, exc, "SCAN_IN_PROGRESS")


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle invalid requests"""
    logger.warning(f"Validation Error: {exc.message}")
    return _error_response(400, exc, "VALIDATION_FAILED")


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    """Return APIError bodies unwrapped"""
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


async def _read_page(
    upload: UploadFile, settings: ServiceConfig, processor: ReceiptImageProcessor
) -> RawImage:
    """Validate an uploaded file and decode it into a page"""
    if upload.content_type not in SUPPORTED_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=APIError(
                error="Unsupported file type",
                details=f"Supported types: {', '.join(sorted(SUPPORTED_MIME_TYPES))}",
                error_code="INVALID_FILE_TYPE",
            ).model_dump(),
        )

    image_bytes = await upload.read()

    if len(image_bytes) > settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=APIError(
                error="File too large",
                details=f"Maximum file size is {settings.max_upload_size_mb}MB",
                error_code="FILE_TOO_LARGE",
            ).model_dump(),
        )

    if len(image_bytes) == 0:
        raise HTTPException(
            status_code=400,
            detail=APIError(
                error="Empty file",
                details=f"The uploaded file {upload.filename} is empty",
                error_code="EMPTY_FILE",
            ).model_dump(),
        )

    logger.info(f"Decoding image: {upload.filename}, Size: {len(image_bytes)} bytes")
    return processor.load_image(image_bytes)


@app.get("/health", response_model=HealthCheck)
async def health_check():
    """Health check endpoint"""
    return HealthCheck(
        status="healthy", version="1.0.0", timestamp=datetime.now().isoformat()
    )


@app.get("/api/v1/languages", response_model=LanguagesResponse)
async def languages(service: OCRService = Depends(get_ocr_service)):
    """Configured and engine-supported recognition languages"""
    return LanguagesResponse(
        configured=service.languages,
        supported=service.supported_languages(),
        unsupported=service.unsupported_languages(),
    )


@app.post("/api/v1/recognize", response_model=RecognitionResponse)
async def recognize(
    image: UploadFile = File(...),
    preprocess: Optional[bool] = None,
    settings: ServiceConfig = Depends(get_config),
    processor: ReceiptImageProcessor = Depends(get_image_processor),
    service: OCRService = Depends(get_ocr_service),
):
    """
    Recognize the text lines on a single receipt image

    Args:
        image: Receipt image file (PNG, JPG, JPEG, BMP, TIFF, WEBP)
        preprocess: Apply the thermal-paper filter chain before recognition

    Returns:
        RecognitionResponse with lines, raw text and processing time
    """
    if preprocess is None:
        preprocess = settings.preprocess_default

    page = await _read_page(image, settings, processor)
    page = processor.normalize_orientation(page)

    result = await service.recognize_text(page, preprocess=preprocess)

    logger.info(
        f"Recognized {len(result.lines)} lines from {image.filename} "
        f"in {result.processing_time:.2f}s"
    )
    return RecognitionResponse.from_result(
        result, filename=image.filename, preprocessed=preprocess
    )


@app.post("/api/v1/contains-text")
async def contains_text(
    image: UploadFile = File(...),
    settings: ServiceConfig = Depends(get_config),
    processor: ReceiptImageProcessor = Depends(get_image_processor),
    service: OCRService = Depends(get_ocr_service),
):
    """Quick check whether an image contains any text"""
    page = await _read_page(image, settings, processor)
    return {"contains_text": await service.contains_text(page)}


@app.post("/api/v1/scan", response_model=ScanSessionResponse)
async def scan(
    pages: List[UploadFile] = File(...),
    settings: ServiceConfig = Depends(get_config),
    processor: ReceiptImageProcessor = Depends(get_image_processor),
    workflow: ScanWorkflow = Depends(get_scan_workflow),
):
    """
    Recognize a multi-page scan, one page at a time in upload order

    A failing page ends the batch; the response then carries the error and
    the results of the pages before it.
    """
    images = []
    for upload in pages:
        page = await _read_page(upload, settings, processor)
        images.append(processor.normalize_orientation(page))

    session = await workflow.start_batch(images)
    return ScanSessionResponse.from_session(session)


@app.get("/api/v1/scan", response_model=ScanSessionResponse)
async def scan_session(workflow: ScanWorkflow = Depends(get_scan_workflow)):
    """Current scan session"""
    return ScanSessionResponse.from_session(workflow.session)


@app.post("/api/v1/scan/reset", response_model=ScanSessionResponse)
async def reset_scan(workflow: ScanWorkflow = Depends(get_scan_workflow)):
    """Discard the current scan"""
    return ScanSessionResponse.from_session(workflow.reset())


@app.post("/api/v1/scan/receipt", response_model=ReceiptDraft)
async def scan_receipt(workflow: ScanWorkflow = Depends(get_scan_workflow)):
    """Receipt record for the completed scan"""
    return workflow.build_receipt_draft()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Receipt Scanner OCR Backend",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "languages": "/api/v1/languages",
            "recognize": "/api/v1/recognize",
            "contains_text": "/api/v1/contains-text",
            "scan": "/api/v1/scan",
            "reset": "/api/v1/scan/reset",
            "receipt": "/api/v1/scan/receipt",
            "docs": "/docs",
        },
    }


# For local development
if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
