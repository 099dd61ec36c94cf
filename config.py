"""Service settings read from the environment."""

import os
from typing import List

from models import RecognitionLevel

DEFAULT_LANGUAGES = "en-US,zh-Hans"

TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


class ServiceConfig:
    """Configuration for the OCR backend."""

    def __init__(self):
        self.languages: List[str] = [
            lang.strip()
            for lang in os.getenv("OCR_LANGUAGES", DEFAULT_LANGUAGES).split(",")
            if lang.strip()
        ]
        self.recognition_level: str = os.getenv("OCR_RECOGNITION_LEVEL", "accurate")
        self.uses_language_correction: bool = _env_flag("OCR_LANGUAGE_CORRECTION", True)
        self.preprocess_default: bool = _env_flag("OCR_PREPROCESS_DEFAULT", True)
        self.max_upload_size_mb: int = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
        self.environment: str = os.getenv("ENVIRONMENT", "development")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def max_upload_size(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    def validate(self) -> None:
        """Validate the configuration settings."""
        if not self.languages:
            raise ValueError("At least one recognition language must be configured. "
                             "Set OCR_LANGUAGES, e.g. 'en-US,zh-Hans'.")

        levels = [level.value for level in RecognitionLevel]
        if self.recognition_level not in levels:
            raise ValueError(f"OCR_RECOGNITION_LEVEL must be one of {levels}, "
                             f"got '{self.recognition_level}'")

        if self.max_upload_size_mb < 1:
            raise ValueError("Maximum upload size must be at least 1MB")

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return {
            'languages': self.languages,
            'recognition_level': self.recognition_level,
            'uses_language_correction': self.uses_language_correction,
            'preprocess_default': self.preprocess_default,
            'max_upload_size_mb': self.max_upload_size_mb,
            'environment': self.environment,
        }
