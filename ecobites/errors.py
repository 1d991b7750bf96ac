"""Error taxonomy for the resolution pipeline.

Every public entry point either returns a complete record or raises one of
these. ``status_code`` is what the HTTP layer answers with.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class ResolverError(Exception):
    status_code: int = 500
    default_message: str = "Product resolution failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ResolverError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(ResolverError):
    status_code = 404
    default_message = "Product not found"


class UpstreamError(ResolverError):
    status_code = 502
    default_message = "Upstream service failed"


class RateLimitedError(UpstreamError):
    status_code = 429
    default_message = "Too many requests. Please wait a moment and try again."


@dataclass
class VariantFailure:
    """Why one model variant did not produce a usable answer."""
    variant: str
    reason: str  # "timeout" | "auth" | "parse" | "backend"
    detail: str = ""

    @property
    def is_auth(self) -> bool:
        return self.reason == "auth"


class IdentificationError(ResolverError):
    status_code = 422
    default_message = "Unable to identify the product"

    def __init__(self, message: Optional[str] = None, failures: Optional[List[VariantFailure]] = None):
        super().__init__(message)
        self.failures: List[VariantFailure] = list(failures or [])


class AuthenticationError(IdentificationError):
    status_code = 503
    default_message = "AI backend rejected the configured credential. Check OPENAI_API_KEY."


class UnidentifiableImageError(IdentificationError):
    status_code = 422
    default_message = (
        "Unable to identify a product in the image. "
        "Please try a clearer photo with the label visible."
    )


__all__ = [
    "ResolverError",
    "ValidationError",
    "NotFoundError",
    "UpstreamError",
    "RateLimitedError",
    "VariantFailure",
    "IdentificationError",
    "AuthenticationError",
    "UnidentifiableImageError",
]
