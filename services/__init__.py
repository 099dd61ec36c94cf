"""
Services package for the receipt scanner backend

This package contains the recognition pipeline: image preprocessing, the
OCR engine adapter, the OCR service and the multi-page scan workflow.
"""

from .ocr_service import OCRService
from .image_processor import ReceiptImageProcessor
from .engine import RecognitionEngine, TesseractEngine
from .scan_workflow import ScanWorkflow
from .exceptions import (
    OCRError,
    ImageProcessingError,
    ImageConversionError,
    RecognitionFailedError,
    NoTextFoundError,
    RecognitionCancelledError,
    ScanInProgressError,
    ValidationError,
)

__all__ = [
    "OCRService",
    "ReceiptImageProcessor",
    "RecognitionEngine",
    "TesseractEngine",
    "ScanWorkflow",
    "OCRError",
    "ImageProcessingError",
    "ImageConversionError",
    "RecognitionFailedError",
    "NoTextFoundError",
    "RecognitionCancelledError",
    "ScanInProgressError",
    "ValidationError",
]
