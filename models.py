from pydantic import BaseModel, ConfigDict, Field, model_validator
from PIL import Image
from typing import List, Optional, Tuple, Any
from datetime import datetime
from enum import Enum, IntEnum


class Orientation(IntEnum):
    """Orientation tag of a captured bitmap, numbered as in EXIF"""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


class RawImage(BaseModel):
    """A captured page: bitmap pixels plus orientation tag and scale factor"""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    bitmap: Image.Image
    orientation: Orientation = Orientation.UP
    scale: float = Field(1.0, gt=0, allow_inf_nan=False)

    @property
    def width(self) -> int:
        return self.bitmap.width

    @property
    def height(self) -> int:
        return self.bitmap.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.bitmap.size


class EdgeInsets(BaseModel):
    """Pixel insets trimmed from each side of a bitmap"""

    model_config = ConfigDict(frozen=True)

    top: float = 0
    left: float = 0
    bottom: float = 0
    right: float = 0


class FilterConfig(BaseModel):
    """Parameters of the preprocessing chain, tuned for thermal paper"""

    model_config = ConfigDict(frozen=True)

    contrast: float = Field(1.5, allow_inf_nan=False)
    brightness: float = Field(0.05, allow_inf_nan=False)
    saturation: float = Field(0.0, ge=0.0, le=0.0, allow_inf_nan=False)
    sharpen_radius: float = Field(2.5, allow_inf_nan=False)
    sharpen_intensity: float = Field(0.5, allow_inf_nan=False)
    exposure_ev: float = Field(0.3, allow_inf_nan=False)


class BoundingBox(BaseModel):
    """Rectangle normalized to the unit square, origin at the top-left"""

    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., ge=0.0, le=1.0)
    height: float = Field(..., ge=0.0, le=1.0)


class RecognizedLine(BaseModel):
    """A single line of text reported by the recognition engine"""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Recognized text of the line")
    confidence: float = Field(
        ..., ge=0.0, le=1.0, description="Engine confidence for this line"
    )
    bounding_box: BoundingBox


class RecognitionResult(BaseModel):
    """Outcome of one successful recognition call"""

    model_config = ConfigDict(frozen=True)

    lines: Tuple[RecognizedLine, ...] = Field(..., min_length=1)
    raw_text: str = Field(..., description="Line texts joined by newlines")
    processing_time: float = Field(
        ..., ge=0.0, description="Elapsed seconds for preprocessing and recognition"
    )

    @model_validator(mode="after")
    def _check_raw_text(self):
        if self.raw_text != "\n".join(line.text for line in self.lines):
            raise ValueError("raw_text must be the line texts joined by newlines")
        return self

    @classmethod
    def from_lines(
        cls, lines: List[RecognizedLine], processing_time: float
    ) -> "RecognitionResult":
        return cls(
            lines=tuple(lines),
            raw_text="\n".join(line.text for line in lines),
            processing_time=max(0.0, processing_time),
        )


class RecognitionLevel(str, Enum):
    """Engine quality mode"""

    ACCURATE = "accurate"
    FAST = "fast"


class RecognitionRequest(BaseModel):
    """Engine configuration fixed when the OCR service is built"""

    model_config = ConfigDict(frozen=True)

    languages: Tuple[str, ...] = Field(..., min_length=1)
    recognition_level: RecognitionLevel = RecognitionLevel.ACCURATE
    uses_language_correction: bool = True


class ScanState(str, Enum):
    """Lifecycle of a scan session"""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScanSession(BaseModel):
    """Immutable snapshot of the scan workflow"""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    pages: Tuple[RawImage, ...] = ()
    results: Tuple[RecognitionResult, ...] = ()
    state: ScanState = ScanState.IDLE
    error: Optional[Exception] = None

    @property
    def is_processing(self) -> bool:
        return self.state == ScanState.PROCESSING

    @property
    def has_scanned_images(self) -> bool:
        return bool(self.pages)

    @property
    def total_lines_recognized(self) -> int:
        return sum(len(result.lines) for result in self.results)

    @property
    def raw_text(self) -> str:
        return "\n\n".join(result.raw_text for result in self.results)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


class MerchantType(str, Enum):
    """Merchants with dedicated receipt handling"""

    COSTCO = "Costco"
    TNT = "T&T"
    WALMART = "Walmart"
    NO_FRILLS = "No Frills"
    FOOD_BASICS = "Food Basics"
    UNKNOWN = "Unknown"


class ReceiptDraft(BaseModel):
    """Recognized receipt handed to the persistence layer"""

    merchant_type: MerchantType = MerchantType.UNKNOWN
    raw_text: str
    page_count: int = Field(..., ge=1)
    line_count: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=datetime.now)


class RecognitionResponse(BaseModel):
    """Successful single-image recognition response"""

    lines: List[RecognizedLine]
    raw_text: str
    processing_time: float
    metadata: Optional[dict] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: RecognitionResult, **metadata: Any):
        return cls(
            lines=list(result.lines),
            raw_text=result.raw_text,
            processing_time=result.processing_time,
            metadata=metadata,
        )


class APIError(BaseModel):
    """Error response model"""

    error: str = Field(..., description="Error message")
    details: Optional[str] = Field(None, description="Additional error details")
    error_code: Optional[str] = Field(None, description="Machine-readable error code")


class ScanSessionResponse(BaseModel):
    """Serializable view of a scan session"""

    state: ScanState
    page_count: int
    results: List[RecognitionResult]
    total_lines_recognized: int
    error: Optional[str] = None

    @classmethod
    def from_session(cls, session: ScanSession) -> "ScanSessionResponse":
        return cls(
            state=session.state,
            page_count=len(session.pages),
            results=list(session.results),
            total_lines_recognized=session.total_lines_recognized,
            error=session.error_message,
        )


class LanguagesResponse(BaseModel):
    """Recognition language hints"""

    configured: List[str]
    supported: List[str]
    unsupported: List[str] = Field(default_factory=list)


class HealthCheck(BaseModel):
    """Health check response"""

    status: str = "healthy"
    version: str = "1.0.0"
    timestamp: str
