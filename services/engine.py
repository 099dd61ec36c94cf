import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
import pytesseract
from pytesseract import Output
from PIL import Image

from models import BoundingBox, RecognitionLevel, RecognitionRequest, RecognizedLine

logger = logging.getLogger(__name__)

# Receives either the recognized lines or the engine error
Completion = Callable[[Optional[List[RecognizedLine]], Optional[BaseException]], None]

# Recognition language hints mapped to Tesseract traineddata names
TESSERACT_LANGUAGES = {
    "en-US": "eng",
    "zh-Hans": "chi_sim",
    "zh-Hant": "chi_tra",
    "fr-FR": "fra",
    "de-DE": "deu",
    "es-ES": "spa",
    "it-IT": "ita",
    "pt-BR": "por",
    "ja-JP": "jpn",
    "ko-KR": "kor",
    "vi-VN": "vie",
}

DEFAULT_SUPPORTED_LANGUAGES = ["en-US"]


class RecognitionEngine(ABC):
    """
    Black-box text recognizer.

    Implementations report their outcome through ``completion`` rather than a
    return value, and should call it exactly once.
    """

    @abstractmethod
    def perform(
        self,
        bitmap: Image.Image,
        request: RecognitionRequest,
        completion: Completion,
    ) -> None:
        ...

    @classmethod
    @abstractmethod
    def supported_languages(cls) -> List[str]:
        ...

    def version(self) -> str:
        return "Unknown"


class TesseractEngine(RecognitionEngine):
    """Recognition engine backed by the Tesseract CLI"""

    # Page segmentation: 4 is a single column of variable-size text, which
    # suits receipts; 6 is a single uniform block.
    tesseract_config = {
        RecognitionLevel.ACCURATE: "--oem 3 --psm 4 -c preserve_interword_spaces=1",
        RecognitionLevel.FAST: "--oem 3 --psm 6",
    }

    def perform(
        self,
        bitmap: Image.Image,
        request: RecognitionRequest,
        completion: Completion,
    ) -> None:
        config = self.tesseract_config[request.recognition_level]
        if not request.uses_language_correction:
            config += " -c load_system_dawg=0 -c load_freq_dawg=0"

        try:
            ocr_data = pytesseract.image_to_data(
                bitmap,
                lang=self.tesseract_language(request.languages),
                config=config,
                output_type=Output.DICT,
            )
        except (pytesseract.TesseractError, RuntimeError, OSError) as e:
            logger.error(f"Tesseract failed: {str(e)}")
            completion(None, e)
            return

        completion(self._lines_from_data(ocr_data, bitmap.width, bitmap.height), None)

    @staticmethod
    def tesseract_language(languages) -> str:
        return "+".join(TESSERACT_LANGUAGES.get(lang, lang) for lang in languages)

    def _lines_from_data(
        self, ocr_data: Dict[str, list], width: int, height: int
    ) -> List[RecognizedLine]:
        """Group word-level Tesseract output into lines, keeping engine order"""
        grouped: Dict[tuple, list] = {}

        for i, word in enumerate(ocr_data["text"]):
            confidence = float(ocr_data["conf"][i])
            if confidence < 0 or not str(word).strip():
                continue

            key = (
                ocr_data["block_num"][i],
                ocr_data["par_num"][i],
                ocr_data["line_num"][i],
            )
            grouped.setdefault(key, []).append(
                (
                    str(word).strip(),
                    confidence,
                    int(ocr_data["left"][i]),
                    int(ocr_data["top"][i]),
                    int(ocr_data["width"][i]),
                    int(ocr_data["height"][i]),
                )
            )

        lines = []
        for words in grouped.values():
            left = min(w[2] for w in words)
            top = min(w[3] for w in words)
            right = max(w[2] + w[4] for w in words)
            bottom = max(w[3] + w[5] for w in words)

            lines.append(
                RecognizedLine(
                    text=" ".join(w[0] for w in words),
                    confidence=min(1.0, sum(w[1] for w in words) / len(words) / 100),
                    bounding_box=_normalized_box(left, top, right, bottom, width, height),
                )
            )

        return lines

    @classmethod
    def supported_languages(cls) -> List[str]:
        """Language hints with traineddata installed"""
        try:
            installed = pytesseract.get_languages(config="")
        except (pytesseract.TesseractError, RuntimeError, OSError) as e:
            logger.warning(f"Could not query Tesseract languages: {str(e)}")
            return list(DEFAULT_SUPPORTED_LANGUAGES)

        hints = {code: hint for hint, code in TESSERACT_LANGUAGES.items()}
        languages = [hints.get(code, code) for code in installed if code != "osd"]
        return languages or list(DEFAULT_SUPPORTED_LANGUAGES)

    def version(self) -> str:
        try:
            return str(pytesseract.get_tesseract_version())
        except (pytesseract.TesseractError, RuntimeError, OSError):
            return "Unknown"


def _normalized_box(
    left: int, top: int, right: int, bottom: int, width: int, height: int
) -> BoundingBox:
    def clamp(value: float) -> float:
        return min(1.0, max(0.0, value))

    x = clamp(left / width)
    y = clamp(top / height)
    return BoundingBox(
        x=x,
        y=y,
        width=clamp(right / width) - x,
        height=clamp(bottom / height) - y,
    )
