"""Test configuration and fixtures."""
import threading
import time
from io import BytesIO

import pytest
from PIL import Image

from models import BoundingBox, RawImage, RecognizedLine
from services.engine import RecognitionEngine


def make_line(text, confidence=0.9, index=0):
    """Build a recognized line stacked below the previous ones"""
    return RecognizedLine(
        text=text,
        confidence=confidence,
        bounding_box=BoundingBox(
            x=0.1, y=min(0.9, 0.05 * index), width=0.8, height=0.04
        ),
    )


def make_page(width=120, height=80, color=(200, 180, 160), mode="RGB", **kwargs):
    """Create a synthetic receipt page"""
    return RawImage(bitmap=Image.new(mode, (width, height), color=color), **kwargs)


def png_bytes(width=200, height=100, color="white"):
    """Encode a plain image as PNG"""
    image = Image.new("RGB", (width, height), color=color)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class ScriptedEngine(RecognitionEngine):
    """
    Recognition engine that replays scripted outcomes, one per call.

    An outcome is a list of line texts, an exception to report through the
    completion callback, or a callable receiving the completion callback.
    """

    def __init__(self, outcomes=None, delay=0.0, languages=("en-US", "zh-Hans")):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.languages = list(languages)
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._counter = threading.Lock()

    def perform(self, bitmap, request, completion):
        with self._counter:
            self.calls.append(bitmap)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            outcome = self.outcomes.pop(0) if self.outcomes else ["RECEIPT"]

        try:
            if self.delay:
                time.sleep(self.delay)

            if callable(outcome):
                outcome(completion)
            elif isinstance(outcome, BaseException):
                completion(None, outcome)
            else:
                completion(
                    [make_line(text, index=i) for i, text in enumerate(outcome)], None
                )
        finally:
            with self._counter:
                self.active -= 1

    def supported_languages(self):
        return list(self.languages)

    def version(self):
        return "scripted"


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def page():
    return make_page()
