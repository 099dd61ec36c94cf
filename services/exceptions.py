"""
Custom exception classes for the OCR service
"""


class OCRError(Exception):
    """Base exception for OCR-related errors"""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class ImageProcessingError(OCRError):
    """Raised when an image cannot be decoded or a filter stage cannot run"""

    pass


class ImageConversionError(OCRError):
    """Raised when an image cannot be prepared for the recognition engine"""

    def __init__(self, details: str = None):
        super().__init__("Failed to convert image for text recognition", details)


class RecognitionFailedError(OCRError):
    """Raised when the recognition engine reports an internal failure"""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Text recognition failed: {cause}", repr(cause))


class NoTextFoundError(OCRError):
    """Raised when the engine ran successfully but found no lines"""

    def __init__(self, details: str = None):
        super().__init__("No text found in image", details)


class RecognitionCancelledError(OCRError):
    """Raised when a recognition request is cancelled before it completes"""

    def __init__(self, details: str = None):
        super().__init__("OCR operation was cancelled", details)


class ScanInProgressError(OCRError):
    """Raised when a batch is started while another one is processing"""

    def __init__(self, details: str = None):
        super().__init__("A scan batch is already being processed", details)


class ValidationError(OCRError):
    """Raised when input or session state fails validation"""

    pass
