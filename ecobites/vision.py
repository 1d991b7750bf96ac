"""Generative AI identification and nutrition estimation.

- ``identify_from_image``: product name/brand from a photo. Exhausting every
  model variant is a hard failure (``AuthenticationError`` or
  ``UnidentifiableImageError``).
- ``fetch_nutrition``: typical per-100g values for a named product, text only.
  Exhausting every variant degrades to a placeholder record instead of raising.

Both walk the same ordered list of model variants (fastest/cheapest first),
each attempt bounded by ``AI_TIMEOUT_SEC``. Every failed attempt is kept as a
``VariantFailure`` for diagnostics.
"""
from __future__ import annotations

import asyncio
import base64
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import openai
from openai import OpenAI
from loguru import logger

from ecobites.config import (
    AI_MODEL_VARIANTS,
    AI_TIMEOUT_SEC,
    AI_TEMPERATURE,
    AI_MAX_TOKENS,
    get_openai_api_key,
)
from ecobites.errors import (
    AuthenticationError,
    UnidentifiableImageError,
    ValidationError,
    VariantFailure,
)
from ecobites.schemas import (
    INGREDIENTS_UNAVAILABLE,
    Identification,
    Nutrition,
    NutritionEstimate,
    coerce_grade,
    coerce_nutrition,
    coerce_str_list,
)
from ecobites.text_processing import extract_json_object

T = TypeVar("T")

# --- Prompts ---
IDENTIFY_PROMPT = (
    "Identify this food product. Return only the product name and brand in JSON format:\n"
    "{\n"
    '  "name": "product name",\n'
    '  "brand": "brand name or null if not visible"\n'
    "}\n"
    "Only return valid JSON, no additional text."
)

_NUTRITION_SCHEMA = (
    "{\n"
    '  "name": "product name",\n'
    '  "brand": "brand name",\n'
    '  "nutrition": {\n'
    '    "energy": number in kcal per 100g,\n'
    '    "fat": number in grams per 100g,\n'
    '    "sugars": number in grams per 100g,\n'
    '    "salt": number in grams per 100g,\n'
    '    "protein": number in grams per 100g,\n'
    '    "fiber": number in grams per 100g,\n'
    '    "sodium": number in grams per 100g\n'
    "  },\n"
    '  "ingredients": "typical ingredient list",\n'
    '  "allergens": ["typical allergens"],\n'
    '  "nutriScore": "A, B, C, D, or E based on nutritional quality",\n'
    '  "ecoScore": "A, B, C, D, or E based on environmental impact",\n'
    '  "packaging": ["typical packaging materials"],\n'
    '  "description": "brief description of the product"\n'
    "}"
)


def build_nutrition_prompt(product_query: str) -> str:
    return (
        f"Provide typical nutritional information per 100g for the food product \"{product_query}\".\n"
        "Use values printed on the product's packaging when you know them, otherwise estimate "
        "typical values for this kind of product. Respond in the following JSON format:\n"
        f"{_NUTRITION_SCHEMA}\n\n"
        "Only return valid JSON, no additional text. Use 0 for unknown numbers."
    )


# Heuristic fallback for backends that only surface plain-text errors.
AUTH_STATUS_RE = re.compile(r"\b40[13]\b")
AUTH_ERROR_MARKERS = ("api key", "api_key", "unauthorized", "unauthenticated", "permission denied", "invalid_api_key")


@dataclass
class ImageInput:
    data: bytes
    mime_type: str = "image/jpeg"

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


class MissingCredentialError(RuntimeError):
    pass


class _UnusableResponse(ValueError):
    """Model answered, but not with the object we asked for."""


class ModelVariant:
    """One named, capability-equivalent configuration of the AI backend."""

    name: str = "variant"

    async def generate(self, prompt: str, image: Optional[ImageInput] = None) -> str:
        raise NotImplementedError


class OpenAIModelVariant(ModelVariant):
    """Chat Completions call run in a worker thread (the SDK client is sync)."""

    def __init__(
        self,
        name: str,
        temperature: float = AI_TEMPERATURE,
        max_tokens: int = AI_MAX_TOKENS,
        timeout: float = AI_TIMEOUT_SEC,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.name = name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> Any:
        api_key = get_openai_api_key()
        if not api_key:
            raise MissingCredentialError("OPENAI_API_KEY not set; API key is required for image analysis")
        return OpenAI(api_key=api_key, timeout=self.timeout, max_retries=0)

    @staticmethod
    def build_messages(prompt: str, image: Optional[ImageInput]) -> List[Dict[str, Any]]:
        if image is None:
            return [{"role": "user", "content": prompt}]
        return [{
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.data_url()}},
            ],
        }]

    def _call_sync(self, messages: List[Dict[str, Any]]) -> str:
        client = self._client_factory()
        resp = client.chat.completions.create(
            model=self.name,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return resp.choices[0].message.content or ""

    async def generate(self, prompt: str, image: Optional[ImageInput] = None) -> str:
        return await asyncio.to_thread(self._call_sync, self.build_messages(prompt, image))


def build_default_variants(names: Sequence[str] = AI_MODEL_VARIANTS) -> List[ModelVariant]:
    return [OpenAIModelVariant(n) for n in names]


def classify_failure(variant: str, exc: BaseException) -> VariantFailure:
    if isinstance(exc, asyncio.TimeoutError):
        return VariantFailure(variant, "timeout", "no response within time limit")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError, MissingCredentialError)):
        return VariantFailure(variant, "auth", str(exc))
    if isinstance(exc, _UnusableResponse):
        return VariantFailure(variant, "parse", str(exc))
    text = str(exc)
    if AUTH_STATUS_RE.search(text) or any(marker in text.lower() for marker in AUTH_ERROR_MARKERS):
        return VariantFailure(variant, "auth", text)
    return VariantFailure(variant, "backend", f"{type(exc).__name__}: {text}")


def parse_identification(raw_text: str) -> Identification:
    data = extract_json_object(raw_text)
    if data is None:
        raise _UnusableResponse("no JSON object in response")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise _UnusableResponse("response has no product name")
    brand = data.get("brand")
    brand = brand.strip() if isinstance(brand, str) else None
    if brand and brand.lower() in ("null", "none", "unknown", "n/a"):
        brand = None
    return Identification(name=name.strip(), brand=brand or None)


def validate_nutrition_payload(
    data: Dict[str, Any],
    known_name: Optional[str] = None,
    known_brand: Optional[str] = None,
) -> NutritionEstimate:
    """Coerce a parsed payload: missing nutrition -> zeros, bad grades -> "A"."""
    def _text(v: Any) -> Optional[str]:
        return v.strip() if isinstance(v, str) and v.strip() else None

    return NutritionEstimate(
        name=known_name or _text(data.get("name")),
        brand=known_brand or _text(data.get("brand")),
        nutrition=Nutrition(**coerce_nutrition(data.get("nutrition"))),
        ingredients=_text(data.get("ingredients")) or INGREDIENTS_UNAVAILABLE,
        allergens=coerce_str_list(data.get("allergens")),
        nutri_score=coerce_grade(data.get("nutriScore")),
        eco_score=coerce_grade(data.get("ecoScore")),
        packaging=coerce_str_list(data.get("packaging")),
        description=_text(data.get("description")),
    )


def default_nutrition_estimate(known_name: Optional[str] = None, known_brand: Optional[str] = None) -> NutritionEstimate:
    return NutritionEstimate(
        name=known_name,
        brand=known_brand,
        ingredients="Nutrition information could not be retrieved. Please check the product label.",
        description="Nutrition values unavailable; showing placeholder values.",
        degraded=True,
    )


class VisionAdapter:
    def __init__(self, variants: Sequence[ModelVariant], timeout: float = AI_TIMEOUT_SEC):
        if not variants:
            raise ValueError("at least one model variant is required")
        self.variants = list(variants)
        self.timeout = timeout

    async def _first_success(
        self,
        prompt: str,
        image: Optional[ImageInput],
        accept: Callable[[str], T],
        purpose: str,
    ) -> Tuple[Optional[T], List[VariantFailure]]:
        failures: List[VariantFailure] = []
        for variant in self.variants:
            try:
                raw = await asyncio.wait_for(variant.generate(prompt, image), timeout=self.timeout)
                result = accept(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = classify_failure(variant.name, e)
                failures.append(failure)
                logger.warning(f"{purpose}: variant={variant.name} failed reason={failure.reason} detail={failure.detail[:200]}")
                continue
            logger.debug(f"{purpose}: variant={variant.name} succeeded")
            return result, failures
        return None, failures

    async def identify_from_image(self, image_bytes: bytes, mime_type: str) -> Identification:
        if not image_bytes:
            raise ValidationError("No image file provided")
        if not (mime_type or "").lower().startswith("image/"):
            raise ValidationError("Please upload an image file")
        image = ImageInput(data=image_bytes, mime_type=mime_type)
        ident, failures = await self._first_success(IDENTIFY_PROMPT, image, parse_identification, "identify")
        if ident is not None:
            return ident
        if any(f.is_auth for f in failures):
            raise AuthenticationError(failures=failures)
        raise UnidentifiableImageError(failures=failures)

    async def fetch_nutrition(
        self,
        product_query: str,
        known_name: Optional[str] = None,
        known_brand: Optional[str] = None,
    ) -> NutritionEstimate:
        def _accept(raw: str) -> NutritionEstimate:
            data = extract_json_object(raw)
            if data is None:
                raise _UnusableResponse("no JSON object in response")
            return validate_nutrition_payload(data, known_name, known_brand)

        estimate, failures = await self._first_success(
            build_nutrition_prompt(product_query), None, _accept, "nutrition"
        )
        if estimate is not None:
            return estimate
        logger.warning(f"nutrition: all {len(failures)} variants failed for '{product_query}', using defaults")
        return default_nutrition_estimate(known_name, known_brand)


__all__ = [
    "IDENTIFY_PROMPT",
    "build_nutrition_prompt",
    "ImageInput",
    "ModelVariant",
    "OpenAIModelVariant",
    "MissingCredentialError",
    "build_default_variants",
    "classify_failure",
    "parse_identification",
    "validate_nutrition_payload",
    "default_nutrition_estimate",
    "VisionAdapter",
]
