import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence
from PIL import Image

from models import (
    FilterConfig,
    RawImage,
    RecognitionLevel,
    RecognitionRequest,
    RecognitionResult,
    RecognizedLine,
)
from services.engine import RecognitionEngine, TesseractEngine
from services.image_processor import ReceiptImageProcessor
from services.exceptions import (
    ImageConversionError,
    NoTextFoundError,
    RecognitionFailedError,
)

logger = logging.getLogger(__name__)

# One Latin-script and one CJK-script hint
DEFAULT_LANGUAGES = ("en-US", "zh-Hans")


class OCRService:
    """
    Main OCR service that orchestrates image processing and text recognition

    Requests to one service instance are handled one at a time, in the order
    they arrive, because the underlying engine handle is not safe for
    concurrent use. Separate instances do not wait on each other.
    """

    def __init__(
        self,
        engine: Optional[RecognitionEngine] = None,
        image_processor: Optional[ReceiptImageProcessor] = None,
        languages: Sequence[str] = DEFAULT_LANGUAGES,
        recognition_level: RecognitionLevel = RecognitionLevel.ACCURATE,
        uses_language_correction: bool = True,
        filter_config: Optional[FilterConfig] = None,
    ):
        self.engine = engine or TesseractEngine()
        self.image_processor = image_processor or ReceiptImageProcessor(filter_config)
        self.request = RecognitionRequest(
            languages=tuple(languages),
            recognition_level=recognition_level,
            uses_language_correction=uses_language_correction,
        )
        self._lock = asyncio.Lock()

    @property
    def languages(self) -> List[str]:
        return list(self.request.languages)

    async def recognize_text(
        self, image: RawImage, preprocess: bool = True
    ) -> RecognitionResult:
        """
        Recognize the text lines on one page

        Args:
            image: Page to recognize
            preprocess: Run the thermal-paper filter chain first

        Returns:
            RecognitionResult with at least one line

        Raises:
            ImageConversionError: The page cannot be handed to the engine
            RecognitionFailedError: The engine reported a failure
            NoTextFoundError: The engine found no lines
        """
        async with self._lock:
            start_time = time.perf_counter()

            processed_image = image
            if preprocess:
                processed_image = await asyncio.to_thread(
                    self.image_processor.preprocess, image
                )
                processed_image = processed_image or image

            bitmap = self._prepare_bitmap(processed_image)
            lines = await self._perform_recognition(bitmap)

            if not lines:
                raise NoTextFoundError(
                    "The recognition engine returned no lines for this image"
                )

            processing_time = time.perf_counter() - start_time

        logger.info(
            f"Recognized {len(lines)} lines in {processing_time:.2f}s "
            f"(preprocess={preprocess})"
        )
        return RecognitionResult.from_lines(lines, processing_time)

    def _prepare_bitmap(self, image: RawImage) -> Image.Image:
        """Validate the page and convert it to a pixel format the engine reads"""
        bitmap = getattr(image, "bitmap", None)
        if not isinstance(bitmap, Image.Image):
            raise ImageConversionError("Image has no bitmap")

        if bitmap.width == 0 or bitmap.height == 0:
            raise ImageConversionError("Image has no pixels")

        if bitmap.mode not in ("RGB", "L"):
            try:
                bitmap = bitmap.convert("RGB")
            except (ValueError, OSError) as e:
                raise ImageConversionError(
                    f"Cannot convert {bitmap.mode} image: {str(e)}"
                )

        return bitmap

    async def _perform_recognition(self, bitmap: Image.Image) -> List[RecognizedLine]:
        """
        Run the engine once and wait for its completion callback

        Only the first completion counts; any later callback is ignored.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def resolve(lines, error):
            if future.done():
                return
            if error is not None:
                future.set_exception(RecognitionFailedError(error))
            else:
                future.set_result(list(lines or []))

        def completion(lines, error=None):
            loop.call_soon_threadsafe(resolve, lines, error)

        try:
            await asyncio.to_thread(
                self.engine.perform, bitmap, self.request, completion
            )
        except Exception as e:
            resolve(None, e)

        # Completions queued from the worker thread run before we resume here
        if not future.done():
            resolve(
                None, RuntimeError("Recognition engine finished without a result")
            )

        return await future

    async def contains_text(self, image: RawImage) -> bool:
        """Quick check whether a page has any recognizable text; never raises"""
        try:
            result = await self.recognize_text(image, preprocess=False)
        except Exception as e:
            logger.debug(f"No text detected: {str(e)}")
            return False

        return bool(result.lines)

    def supported_languages(self) -> List[str]:
        """Language hints the engine can recognize"""
        return self.engine.supported_languages()

    def unsupported_languages(self) -> List[str]:
        """Configured language hints the engine does not list as supported"""
        supported = set(self.supported_languages())
        return [lang for lang in self.request.languages if lang not in supported]

    def get_service_info(self) -> Dict[str, str]:
        """Get information about the OCR service configuration"""
        return {
            "engine": type(self.engine).__name__,
            "engine_version": self.engine.version(),
            "image_processor": type(self.image_processor).__name__,
            "languages": ", ".join(self.request.languages),
            "recognition_level": self.request.recognition_level.value,
            "language_correction": str(self.request.uses_language_correction),
        }
