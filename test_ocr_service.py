import asyncio
import threading

import pytest
import numpy as np
from PIL import Image
from pydantic import ValidationError as ModelValidationError

from conftest import ScriptedEngine, make_line, make_page
from models import RawImage, RecognitionLevel, RecognitionResult
from services.ocr_service import DEFAULT_LANGUAGES, OCRService
from services.exceptions import (
    ImageConversionError,
    NoTextFoundError,
    RecognitionFailedError,
)


class TestRecognitionResult:
    """Result value invariants"""

    def test_raw_text_joins_lines_in_order(self):
        lines = [
            make_line("COSTCO WHOLESALE"),
            make_line("大白菜 3.99", index=1),
            make_line("TOTAL 12.48", index=2),
        ]

        result = RecognitionResult.from_lines(lines, 0.25)

        assert result.raw_text == "COSTCO WHOLESALE\n大白菜 3.99\nTOTAL 12.48"
        assert [line.text for line in result.lines] == [
            "COSTCO WHOLESALE",
            "大白菜 3.99",
            "TOTAL 12.48",
        ]

    def test_empty_lines_rejected(self):
        with pytest.raises(ModelValidationError):
            RecognitionResult(lines=(), raw_text="", processing_time=0.0)

    def test_mismatched_raw_text_rejected(self):
        with pytest.raises(ModelValidationError):
            RecognitionResult(
                lines=(make_line("A"), make_line("B")),
                raw_text="A B",
                processing_time=0.0,
            )

    def test_confidence_bounds(self):
        with pytest.raises(ModelValidationError):
            make_line("X", confidence=1.5)


class TestRecognizeText:
    """OCR service recognition path"""

    @pytest.mark.asyncio
    async def test_successful_recognition(self, page):
        engine = ScriptedEngine([["T&T SUPERMARKET", "豆腐 2.49", "HST 0.32"]])
        service = OCRService(engine=engine)

        result = await service.recognize_text(page)

        assert result.raw_text == "T&T SUPERMARKET\n豆腐 2.49\nHST 0.32"
        assert len(result.lines) == 3
        assert result.processing_time >= 0
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_default_request_configuration(self, engine):
        service = OCRService(engine=engine)

        assert service.request.languages == DEFAULT_LANGUAGES
        assert service.request.recognition_level == RecognitionLevel.ACCURATE
        assert service.request.uses_language_correction is True

    def test_languages_required(self, engine):
        with pytest.raises(ValueError):
            OCRService(engine=engine, languages=[])

    @pytest.mark.asyncio
    async def test_preprocessed_bitmap_reaches_engine(self):
        engine = ScriptedEngine()
        service = OCRService(engine=engine)
        page = make_page(color=(220, 40, 30))

        await service.recognize_text(page)

        pixels = np.asarray(engine.calls[0])
        assert engine.calls[0].size == page.size
        assert np.array_equal(pixels[..., 0], pixels[..., 2])

    @pytest.mark.asyncio
    async def test_without_preprocessing_engine_sees_original(self):
        engine = ScriptedEngine()
        service = OCRService(engine=engine)
        page = make_page(color=(220, 40, 30))

        await service.recognize_text(page, preprocess=False)

        assert engine.calls[0].getpixel((0, 0)) == (220, 40, 30)

    @pytest.mark.asyncio
    async def test_unfilterable_image_is_still_recognized(self):
        engine = ScriptedEngine([["TOTAL"]])
        service = OCRService(engine=engine)
        page = RawImage(bitmap=Image.new("CMYK", (20, 20)))

        result = await service.recognize_text(page)

        assert result.raw_text == "TOTAL"
        assert engine.calls[0].mode == "RGB"

    @pytest.mark.asyncio
    async def test_zero_lines_is_no_text_found(self, page):
        engine = ScriptedEngine([[]])
        service = OCRService(engine=engine)

        with pytest.raises(NoTextFoundError) as exc_info:
            await service.recognize_text(page)

        assert str(exc_info.value) == "No text found in image"

    @pytest.mark.asyncio
    async def test_engine_error_is_wrapped(self, page):
        cause = RuntimeError("engine exploded")
        service = OCRService(engine=ScriptedEngine([cause]))

        with pytest.raises(RecognitionFailedError) as exc_info:
            await service.recognize_text(page)

        assert exc_info.value.cause is cause
        assert str(exc_info.value) == "Text recognition failed: engine exploded"

    @pytest.mark.asyncio
    async def test_engine_raising_is_wrapped(self, page):
        def explode(completion):
            raise OSError("handler failed")

        service = OCRService(engine=ScriptedEngine([explode]))

        with pytest.raises(RecognitionFailedError) as exc_info:
            await service.recognize_text(page)

        assert isinstance(exc_info.value.cause, OSError)

    @pytest.mark.asyncio
    async def test_first_completion_wins(self, page):
        def twice(completion):
            completion([make_line("FIRST")], None)
            completion([make_line("SECOND")], None)
            completion(None, RuntimeError("late error"))

        service = OCRService(engine=ScriptedEngine([twice]))

        result = await service.recognize_text(page)

        assert result.raw_text == "FIRST"

    @pytest.mark.asyncio
    async def test_missing_completion_fails(self, page):
        service = OCRService(engine=ScriptedEngine([lambda completion: None]))

        with pytest.raises(RecognitionFailedError):
            await service.recognize_text(page)

    @pytest.mark.asyncio
    async def test_empty_bitmap_is_conversion_failure(self):
        engine = ScriptedEngine()
        service = OCRService(engine=engine)
        page = RawImage(bitmap=Image.new("RGB", (0, 0)))

        with pytest.raises(ImageConversionError):
            await service.recognize_text(page)

        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_missing_image_is_conversion_failure(self, engine):
        service = OCRService(engine=engine)

        with pytest.raises(ImageConversionError):
            await service.recognize_text(None, preprocess=False)


class TestSerialization:
    """One request in flight per service instance"""

    @pytest.mark.asyncio
    async def test_requests_complete_in_submission_order(self, page):
        engine = ScriptedEngine([["A"], ["B"]], delay=0.1)
        service = OCRService(engine=engine)
        finished = []

        async def run(label):
            result = await service.recognize_text(page)
            finished.append((label, result.raw_text))

        task_a = asyncio.create_task(run("A"))
        await asyncio.sleep(0.01)
        task_b = asyncio.create_task(run("B"))
        await asyncio.gather(task_a, task_b)

        assert finished == [("A", "A"), ("B", "B")]
        assert engine.max_active == 1

    @pytest.mark.asyncio
    async def test_many_requests_never_overlap(self, page):
        engine = ScriptedEngine(delay=0.02)
        service = OCRService(engine=engine)

        await asyncio.gather(*(service.recognize_text(page) for _ in range(5)))

        assert len(engine.calls) == 5
        assert engine.max_active == 1

    @pytest.mark.asyncio
    async def test_independent_services_run_concurrently(self, page):
        # Each engine waits for the other; serialized services would time out
        barrier = threading.Barrier(2, timeout=2)

        def meet(completion):
            barrier.wait()
            completion([make_line("OK")], None)

        first = OCRService(engine=ScriptedEngine([meet]))
        second = OCRService(engine=ScriptedEngine([meet]))

        results = await asyncio.gather(
            first.recognize_text(page), second.recognize_text(page)
        )

        assert [result.raw_text for result in results] == ["OK", "OK"]


class TestContainsText:
    """Best-effort text presence check"""

    @pytest.mark.asyncio
    async def test_text_present(self, page):
        service = OCRService(engine=ScriptedEngine([["TOTAL"]]))

        assert await service.contains_text(page) is True

    @pytest.mark.asyncio
    async def test_blank_page(self, page):
        service = OCRService(engine=ScriptedEngine([[]]))

        assert await service.contains_text(page) is False

    @pytest.mark.asyncio
    async def test_engine_failure(self, page):
        service = OCRService(engine=ScriptedEngine([RuntimeError("boom")]))

        assert await service.contains_text(page) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "image",
        [None, "not an image", RawImage(bitmap=Image.new("RGB", (0, 0)))],
    )
    async def test_invalid_input_never_raises(self, image):
        service = OCRService(engine=ScriptedEngine())

        assert await service.contains_text(image) is False


class TestServiceInfo:
    """Language and configuration reporting"""

    def test_unsupported_languages(self):
        engine = ScriptedEngine(languages=["en-US"])
        service = OCRService(engine=engine)

        assert service.supported_languages() == ["en-US"]
        assert service.unsupported_languages() == ["zh-Hans"]

    def test_service_info(self, engine):
        service = OCRService(engine=engine, recognition_level=RecognitionLevel.FAST)

        info = service.get_service_info()

        assert info["engine"] == "ScriptedEngine"
        assert info["engine_version"] == "scripted"
        assert info["image_processor"] == "ReceiptImageProcessor"
        assert info["recognition_level"] == "fast"
        assert info["languages"] == "en-US, zh-Hans"
