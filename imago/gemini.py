"""Gemini image generation requests with model fallback on 404."""
from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import requests

API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-2.5-flash-image"
MODEL_FALLBACKS: Tuple[str, ...] = (
    "gemini-3.1-flash-image-preview",
    "gemini-3-pro-image-preview",
    "gemini-2.0-flash-exp-image-generation",
)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 120.0
ERROR_PREVIEW_CHARS = 500

logger = logging.getLogger("imago.gemini")


class ImagoError(RuntimeError):
    """Base class for errors raised by imago."""


class ErrorKind(enum.Enum):
    MISSING_CREDENTIAL = "missing_credential"
    MODEL_UNAVAILABLE = "model_unavailable"
    REQUEST_FAILED = "request_failed"
    INVALID_RESPONSE = "invalid_response"
    CONTENT_BLOCKED = "content_blocked"


@dataclass(frozen=True)
class GenerationRequest:
    """Prompt, primary model and credential for a single run."""

    prompt: str
    model: str = DEFAULT_MODEL
    api_key: str = field(default="", repr=False)


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes = field(repr=False)
    mime_type: str
    model: str
    text: Optional[str] = None


@dataclass(frozen=True)
class AttemptSuccess:
    image: GeneratedImage


@dataclass(frozen=True)
class AttemptNotFound:
    model: str
    message: str = ""


@dataclass(frozen=True)
class AttemptFailure:
    kind: ErrorKind
    message: str
    status: Optional[int] = None


AttemptOutcome = Union[AttemptSuccess, AttemptNotFound, AttemptFailure]


@dataclass(frozen=True)
class GenerationSuccess:
    image: GeneratedImage
    attempted: Tuple[str, ...]


@dataclass(frozen=True)
class GenerationFailure:
    kind: ErrorKind
    detail: str
    status: Optional[int] = None
    attempted: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.status is not None:
            return f"API error (status {self.status}): {self.detail}"
        return self.detail


GenerationResult = Union[GenerationSuccess, GenerationFailure]


def build_candidates(
    model: Optional[str] = None, fallbacks: Sequence[str] = MODEL_FALLBACKS
) -> Tuple[str, ...]:
    """Return the requested model followed by the fallbacks, without duplicates."""

    head = (model or "").strip() or DEFAULT_MODEL
    ordered: List[str] = []
    for name in (head, *fallbacks):
        if name not in ordered:
            ordered.append(name)
    return tuple(ordered)


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""

    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{'*' * (len(value) - 4)}{value[-4:]}"


def redact_secrets(text: str, secret: Optional[str] = None) -> str:
    """Remove API keys from strings that may end up in logs or error output."""

    if not text:
        return text
    if secret:
        text = text.replace(secret, mask_secret(secret))
    return re.sub(r"(key=)[^&\s]+", r"\1REDACTED", text)


def build_payload(prompt: str) -> dict:
    return {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {"responseModalities": ["IMAGE"]},
    }


def _api_error_message(response: requests.Response) -> str:
    """Prefer the structured ``error.message`` field over the raw body."""

    text = response.text or ""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return text[:ERROR_PREVIEW_CHARS] or (response.reason or "")


def _blocked_ratings(candidate: dict) -> List[str]:
    ratings = candidate.get("safetyRatings") or []
    blocked: List[str] = []
    for rating in ratings:
        if isinstance(rating, dict) and rating.get("blocked"):
            blocked.append(f"{rating.get('category')}: {rating.get('probability')}")
    return blocked


def _inline_data(part: dict) -> Optional[dict]:
    inline = part.get("inlineData") or part.get("inline_data")
    return inline if isinstance(inline, dict) else None


def parse_image_response(data: object, model: str) -> AttemptOutcome:
    """Turn a decoded generateContent response into an attempt outcome."""

    if not isinstance(data, dict):
        return AttemptFailure(ErrorKind.INVALID_RESPONSE, "Response is not a JSON object")

    feedback = data.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return AttemptFailure(
            ErrorKind.CONTENT_BLOCKED, f"Request blocked: {feedback['blockReason']}"
        )

    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return AttemptFailure(ErrorKind.INVALID_RESPONSE, "No image data found in response")
    candidate = candidates[0]

    finish_reason = candidate.get("finishReason")
    if finish_reason and finish_reason != "STOP":
        blocked = _blocked_ratings(candidate)
        if blocked:
            return AttemptFailure(ErrorKind.CONTENT_BLOCKED, ", ".join(blocked))
        if finish_reason == "IMAGE_SAFETY":
            return AttemptFailure(
                ErrorKind.CONTENT_BLOCKED, "Image content blocked by safety filters"
            )

    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return AttemptFailure(ErrorKind.INVALID_RESPONSE, "No image data found in response")

    text_response: Optional[str] = None
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = _inline_data(part)
        if inline is not None:
            mime_type = inline.get("mimeType") or inline.get("mime_type") or ""
            if not isinstance(mime_type, str) or not mime_type.startswith("image/"):
                continue
            encoded = inline.get("data")
            if not isinstance(encoded, str) or not encoded.strip():
                return AttemptFailure(ErrorKind.INVALID_RESPONSE, "Empty image data in response")
            try:
                image_bytes = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as exc:
                return AttemptFailure(
                    ErrorKind.INVALID_RESPONSE, f"Base64 decoding error: {exc}"
                )
            return AttemptSuccess(
                GeneratedImage(
                    data=image_bytes, mime_type=mime_type, model=model, text=text_response
                )
            )
        if isinstance(part.get("text"), str):
            text_response = part["text"]

    if text_response:
        return AttemptFailure(
            ErrorKind.INVALID_RESPONSE,
            f"Model returned text instead of image: {text_response}",
        )
    return AttemptFailure(ErrorKind.INVALID_RESPONSE, "No image data found in response")


class GeminiClient:
    """Issue single generateContent calls against one model at a time."""

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = API_BASE_URL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._timeout = (connect_timeout, read_timeout)

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    def endpoint(self, model: str) -> str:
        return f"{self._base_url}/{model}:generateContent"

    def attempt(self, prompt: str, model: str) -> AttemptOutcome:
        headers = {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        logger.debug(
            "Submitting request to model=%s prompt_preview=%r",
            model,
            prompt.strip().replace("\n", " ")[:160],
        )
        request_start = time.perf_counter()
        try:
            response = self._session.post(
                self.endpoint(model),
                headers=headers,
                json=build_payload(prompt),
                timeout=self._timeout,
            )
        except requests.Timeout as exc:
            return AttemptFailure(
                ErrorKind.REQUEST_FAILED,
                f"Request timed out: {redact_secrets(str(exc), self._api_key)}",
            )
        except requests.RequestException as exc:
            return AttemptFailure(
                ErrorKind.REQUEST_FAILED,
                f"Network error: {redact_secrets(str(exc), self._api_key)}",
            )
        elapsed = time.perf_counter() - request_start
        logger.debug(
            "Received response for model=%s status=%s in %.2fs",
            model,
            response.status_code,
            elapsed,
        )

        if response.status_code == 404:
            return AttemptNotFound(
                model, redact_secrets(_api_error_message(response), self._api_key)
            )
        if not 200 <= response.status_code < 300:
            message = redact_secrets(_api_error_message(response), self._api_key)
            logger.info(
                "Gemini API responded with status=%s for model=%s: %s",
                response.status_code,
                model,
                message,
            )
            return AttemptFailure(ErrorKind.REQUEST_FAILED, message, response.status_code)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            return AttemptFailure(
                ErrorKind.INVALID_RESPONSE, f"Failed to parse API response: {exc}"
            )
        return parse_image_response(data, model)


def generate(
    request: GenerationRequest,
    candidates: Optional[Sequence[str]] = None,
    client: Optional[GeminiClient] = None,
) -> GenerationResult:
    """Try each candidate model in order until one yields an image.

    Only a 404 advances to the next candidate; every other failure ends the
    run with that failure. At most one request is made per candidate.
    """

    if not request.api_key or not request.api_key.strip():
        return GenerationFailure(
            ErrorKind.MISSING_CREDENTIAL,
            "API key not found. Please set GEMINI_API_KEY environment variable",
        )

    ordered = tuple(candidates) if candidates is not None else build_candidates(request.model)
    if not ordered:
        raise ValueError("At least one candidate model is required")

    owns_client = client is None
    if client is None:
        client = GeminiClient(request.api_key)

    tried: List[str] = []
    try:
        for model in ordered:
            if model in tried:
                continue
            tried.append(model)
            logger.info(
                "Requesting image from model=%s (attempt %d/%d)",
                model,
                len(tried),
                len(ordered),
            )
            outcome = client.attempt(request.prompt, model)

            if isinstance(outcome, AttemptSuccess):
                logger.info(
                    "Model %s returned %d bytes (%s)",
                    model,
                    len(outcome.image.data),
                    outcome.image.mime_type,
                )
                return GenerationSuccess(outcome.image, tuple(tried))
            if isinstance(outcome, AttemptNotFound):
                logger.warning("Model %s is unavailable (404), trying next candidate", model)
                continue
            return GenerationFailure(
                outcome.kind,
                redact_secrets(outcome.message, request.api_key),
                outcome.status,
                tuple(tried),
            )
    finally:
        if owns_client:
            client.close()

    return GenerationFailure(
        ErrorKind.MODEL_UNAVAILABLE,
        f"No available image model found. Tried: {', '.join(tried)}",
        attempted=tuple(tried),
    )
