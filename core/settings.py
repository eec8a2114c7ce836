"""
Runtime settings for the schedulers and the annotation client.

Values are read from environment variables (a .env file is loaded first),
following the same conventions as the database configuration.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from core.retry import RetryPolicy

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class SchedulerSettings:
    """
    Configuration for the batch and upload schedulers.

    The batch-dispatch ceiling and the per-batch photo worker count are
    separate values: a single batch may annotate more photos in parallel
    than the number of batches dispatched at once.
    """
    max_concurrent_batches: int = 3
    photo_workers: int = 3
    upload_workers: int = 2
    upload_queue_size: int = 100
    poll_interval: float = 5.0
    error_retry_delay: float = 10.0
    store_retry_attempts: int = 5
    store_retry_delay: float = 0.1
    thumbnail_dir: str = "thumbnails"
    thumbnail_width: int = 512

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        """
        Build settings from environment variables.

        Returns:
            SchedulerSettings populated from the environment.
        """
        settings = cls(
            max_concurrent_batches=_env_int("MAX_CONCURRENT_BATCHES", 3),
            photo_workers=_env_int("PHOTO_WORKERS", 3),
            upload_workers=_env_int("UPLOAD_WORKERS", 2),
            upload_queue_size=_env_int("UPLOAD_QUEUE_SIZE", 100),
            poll_interval=_env_float("POLL_INTERVAL", 5.0),
            error_retry_delay=_env_float("ERROR_RETRY_DELAY", 10.0),
            store_retry_attempts=_env_int("STORE_RETRY_ATTEMPTS", 5),
            store_retry_delay=_env_float("STORE_RETRY_DELAY", 0.1),
            thumbnail_dir=os.getenv("THUMBNAIL_DIR", "thumbnails"),
            thumbnail_width=_env_int("THUMBNAIL_WIDTH", 512),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Check that numeric settings are usable.

        Raises:
            ValueError: If a worker count or size is not positive.
        """
        for name in (
            "max_concurrent_batches",
            "photo_workers",
            "upload_workers",
            "upload_queue_size",
            "store_retry_attempts",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")

    @property
    def store_retry_policy(self) -> RetryPolicy:
        """Retry policy for upload-status flushes."""
        return RetryPolicy(
            max_attempts=self.store_retry_attempts,
            base_delay=self.store_retry_delay,
            backoff_factor=2.0,
            max_delay=5.0,
        )


@dataclass
class AnnotationSettings:
    """Configuration for the OpenAI annotation client."""
    model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    temperature: float = 0.2
    detail: str = "high"
    max_keywords: int = 50
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "AnnotationSettings":
        """
        Build annotation settings from environment variables.

        Returns:
            AnnotationSettings populated from the environment.
        """
        return cls(
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            max_tokens=_env_int("AI_MAX_TOKENS", 1000),
            temperature=_env_float("AI_TEMPERATURE", 0.2),
            detail=os.getenv("AI_DETAIL", "high"),
            max_keywords=_env_int("AI_MAX_KEYWORDS", 50),
            max_retries=_env_int("AI_MAX_RETRIES", 3),
            retry_delay=_env_float("AI_RETRY_DELAY", 1.0),
            timeout=_env_float("AI_TIMEOUT", 60.0),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        """Retry policy for annotation calls."""
        return RetryPolicy(
            max_attempts=max(1, self.max_retries),
            base_delay=self.retry_delay,
        )
