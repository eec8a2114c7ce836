"""
Photo annotation using the OpenAI Vision API.

Produces stock metadata (title, description, keywords, category and a
quality score) for a prepared photo. Failures are classified by ErrorKind
so only transient ones are retried.
"""

import base64
import json
import logging
import mimetypes
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import openai
from openai import OpenAI

from core.errors import AnnotationError, ErrorKind
from core.retry import call_with_retry
from core.settings import AnnotationSettings
from db.models import Classification, Photo

logger = logging.getLogger(__name__)

SYSTEM_PROMPTS = {
    Classification.EDITORIAL: (
        "You are a stock-photo editor writing metadata for editorial use. "
        "Describe who, what, where and when factually; do not invent names "
        "of people or events that are not evident."
    ),
    Classification.COMMERCIAL: (
        "You are a professional stock-photo keywording assistant. Describe "
        "the subject, mood and potential commercial uses; never mention "
        "brands, logos or identifiable private locations."
    ),
}

RESPONSE_FORMAT_HINT = (
    "Respond with a JSON object with the keys: "
    '"title" (string, under 200 characters), '
    '"description" (string), '
    '"keywords" (array of up to {max_keywords} lowercase strings, most relevant first), '
    '"category" (string), '
    '"quality" (integer from 1 to 10 rating commercial potential).'
)


@dataclass
class AnnotationResult:
    """Stock metadata produced for a photo."""
    title: str
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    category: str = ""
    quality: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnnotationResult":
        """
        Build a result from a parsed response or a stored annotation.

        Raises:
            ValueError: If the title is missing or keywords are malformed.
        """
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValueError("annotation has no title")

        keywords = data.get("keywords") or []
        if isinstance(keywords, str):
            keywords = keywords.split(",")
        if not isinstance(keywords, list):
            raise ValueError("keywords must be a list")

        seen = set()
        cleaned = []
        for keyword in keywords:
            keyword = str(keyword).strip().lower()
            if keyword and keyword not in seen:
                seen.add(keyword)
                cleaned.append(keyword)

        try:
            quality = int(data.get("quality") or 0)
        except (TypeError, ValueError):
            quality = 0

        return cls(
            title=title,
            description=str(data.get("description") or "").strip(),
            keywords=cleaned,
            category=str(data.get("category") or "").strip(),
            quality=max(0, min(quality, 10)),
        )


def classify_openai_error(error: Exception) -> AnnotationError:
    """
    Map an OpenAI client exception to an AnnotationError with its kind.

    Args:
        error: Exception raised by the OpenAI client.

    Returns:
        AnnotationError carrying the matching ErrorKind.
    """
    if isinstance(error, openai.RateLimitError):
        retry_after = None
        response = getattr(error, "response", None)
        if response is not None:
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except (TypeError, ValueError):
                retry_after = None
        return AnnotationError(
            f"Annotation rate limited: {error}",
            kind=ErrorKind.RATE_LIMITED,
            retry_after=retry_after,
        )

    if isinstance(error, (openai.APIConnectionError, openai.InternalServerError)):
        # APITimeoutError is a subclass of APIConnectionError
        return AnnotationError(f"Annotation service unavailable: {error}", kind=ErrorKind.TRANSIENT)

    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return AnnotationError(f"Annotation service error: {error}", kind=ErrorKind.TRANSIENT)

    return AnnotationError(f"Annotation request rejected: {error}", kind=ErrorKind.PERMANENT)


class Annotator:
    """
    Annotation client backed by an OpenAI vision model.

    The OpenAI client reads OPENAI_API_KEY from the environment and is
    created on first use.
    """

    def __init__(
        self,
        settings: AnnotationSettings | None = None,
        client: OpenAI | None = None
    ):
        self.settings = settings or AnnotationSettings.from_env()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            # Retries are handled by call_with_retry
            self._client = OpenAI(timeout=self.settings.timeout, max_retries=0)
        return self._client

    def annotate(
        self,
        photo: Photo,
        description: str | None,
        classification: Classification,
        settings: AnnotationSettings | None = None
    ) -> AnnotationResult:
        """
        Generate stock metadata for a photo.

        Args:
            photo: Prepared photo (preview and context metadata set).
            description: Batch description supplied by the submitter.
            classification: Batch classification.
            settings: Per-call override of the annotation settings.

        Returns:
            AnnotationResult for the photo.

        Raises:
            AnnotationError: If annotation fails after the retry policy.
        """
        settings = settings or self.settings
        image_path = Path(photo.preview_path or photo.original_path)
        if not image_path.exists():
            raise AnnotationError(f"Image not found: {image_path}", kind=ErrorKind.PERMANENT)

        messages = self._build_messages(photo, image_path, description, classification, settings)

        return call_with_retry(
            self._request,
            messages,
            settings,
            policy=settings.retry_policy,
            description=f"Annotation of {photo.filename}",
        )

    def _request(self, messages: list[dict], settings: AnnotationSettings) -> AnnotationResult:
        try:
            response = self.client.chat.completions.create(
                model=settings.model,
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                response_format={"type": "json_object"},
                messages=messages,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnnotationError("Empty annotation response", kind=ErrorKind.TRANSIENT)

        try:
            result = AnnotationResult.from_dict(json.loads(content))
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            raise AnnotationError(f"Malformed annotation response: {e}", kind=ErrorKind.PERMANENT) from e

        result.keywords = result.keywords[:settings.max_keywords]
        logger.debug(f"Annotation returned '{result.title}' with {len(result.keywords)} keyword(s)")
        return result

    def _build_messages(
        self,
        photo: Photo,
        image_path: Path,
        description: str | None,
        classification: Classification,
        settings: AnnotationSettings
    ) -> list[dict]:
        mime, _ = mimetypes.guess_type(image_path.name)
        data_url = (
            f"data:{mime or 'image/jpeg'};base64,"
            + base64.b64encode(image_path.read_bytes()).decode()
        )

        lines = [RESPONSE_FORMAT_HINT.format(max_keywords=settings.max_keywords)]
        if description:
            lines.append(f"Photographer's description: {description}")
        context = photo.context_metadata or {}
        if context:
            facts = ", ".join(f"{key}={value}" for key, value in sorted(context.items()))
            lines.append(f"Known facts: {facts}")

        return [
            {"role": "system", "content": SYSTEM_PROMPTS[classification]},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "\n".join(lines)},
                    {"type": "image_url", "image_url": {"url": data_url, "detail": settings.detail}},
                ],
            },
        ]
