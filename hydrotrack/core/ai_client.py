"""Inference provider used by the analysis strategies.

Three questions are asked of the provider:
- container photo -> capacity, container classification, liquid type
- barcode photo   -> barcode, per-container size, product name, liquid type
- free text       -> raw ounces consumed, liquid type

The Gemini provider retries rate limits and server errors itself with
exponential backoff. Whatever still fails is raised as a TransientJobError so
the queue gets another attempt; client errors are permanent.
"""

import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..errors import NothingDetectedError, PermanentJobError, TransientJobError
from ..services.hydration import KEYWORDS
from ..settings import settings

logger = logging.getLogger("hydrotrack.ai")


@dataclass
class Estimate:
    ounces: Optional[float]  # container capacity, or raw consumed ounces for text
    classification: Optional[str] = None
    liquid_type: Optional[str] = None
    product_name: Optional[str] = None
    barcode: Optional[str] = None
    raw: Optional[str] = None


# --- Prompts ---

CONTAINER_PROMPT = """Analyze this image of a liquid container. User has {hand_size} hands.

Keep in mind hand size when estimating container size:
- Large hands make bottles look smaller than they are
- Medium hands show bottles at normal size
- Small hands make bottles look larger than they are

Estimate the container capacity in ounces.

Standard sizes:
- Small (1-8oz): shot, espresso, sample cup, teacup, coffee cup
- Medium (9-16oz): mug, pint, 12oz can, 16.9oz bottle
- Large (17-40oz): sports bottle (20-24oz), tumbler (30-32oz), 1L bottle (33.8oz)
- XL (41-128oz): 40oz tumbler, half gallon (64oz), gallon (128oz)

Classify the container as one of: reusable-bottle, disposable-bottle,
disposable-can, cup-glass, water-fountain, faucet-tap, filtered-dispenser.

Detect the liquid type from labels or branding: water, diet soda, soda,
sports drink, energy drink, coffee, tea, milk, juice, smoothie, alcohol.
If the liquid is clear or no label is visible, assume water.

Respond: ESTIMATE:[ounces]:[classification]:[liquid_type]

If the image has no liquid container, cup, glass or liquid source respond:
NO_LIQUID:Could not detect a liquid container in this image.

Respond with ONLY one format above. Nothing else."""

BARCODE_PROMPT = """Analyze this beverage container. Read its barcode and determine the
INDIVIDUAL CONTAINER SIZE in fluid ounces.

If you see multi-pack labels (e.g. "24 pack" or "12 cans"), return the
PER-CONTAINER size, not the total.

Also identify the liquid type: water, soda, diet soda, sports drink, energy
drink, coffee, tea, milk, juice, smoothie, or alcohol.

Respond with:
BARCODE: [digits]
OUNCES: [number]
LIQUID: [type]
PRODUCT: [product name]

If there is no beverage container in the image respond:
NO_LIQUID:No beverage container found in this image."""

TEXT_PROMPT = """You are a precise water intake estimation assistant. Analyze the description and:

1. Identify the container type and size
2. Determine the liquid type (water, soda, diet soda, sports drink, energy drink, coffee, tea, milk, juice, smoothie, alcohol)
3. Calculate the RAW ounces consumed (do NOT apply hydration percentages)

Standard sizes:
- Small glass/cup: 6-10oz
- Medium glass/cup: 10-14oz
- Large glass/cup: 14-20oz
- Water bottle: 16.9oz (500mL), 20oz, 24oz, 32oz
- Soda can: 12oz
- Coffee mug: 8-16oz

If no liquid type is mentioned, assume water.

Format:
FINAL ANSWER: [ounces] oz | LIQUID: [type]

Example: "FINAL ANSWER: 12 oz | LIQUID: diet soda"

Description: {description}"""

DEFAULT_TEXT_OUNCES = 8.0


# --- Response parsing ---

def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_container_response(text: str) -> Estimate:
    decision = (text or "").strip()
    if decision.upper().startswith("NO_LIQUID") or decision.upper().startswith("NO_WATER"):
        message = decision.split(":", 1)[1].strip() if ":" in decision else ""
        raise NothingDetectedError(message or "No liquid container detected in image")

    if decision.upper().startswith("ESTIMATE:"):
        parts = decision.split(":")
        return Estimate(
            ounces=_to_float(parts[1]) if len(parts) > 1 else None,
            classification=(parts[2].strip() if len(parts) > 2 and parts[2].strip() else "reusable-bottle"),
            liquid_type=(parts[3].strip() if len(parts) > 3 and parts[3].strip() else "water"),
            raw=decision,
        )

    # Bare number fallback
    return Estimate(ounces=_to_float(decision), classification="reusable-bottle", liquid_type="water", raw=decision)


def parse_barcode_response(text: str) -> Estimate:
    content = (text or "").strip()
    if content.upper().startswith("NO_LIQUID"):
        message = content.split(":", 1)[1].strip() if ":" in content else ""
        raise NothingDetectedError(message or "No beverage container found in image")

    barcode = re.search(r"BARCODE:\s*([0-9A-Za-z-]+)", content, re.IGNORECASE)
    ounces = re.search(r"OUNCES:\s*(\d+\.?\d*)", content, re.IGNORECASE)
    liquid = re.search(r"LIQUID:\s*(.+?)(?:\n|$)", content, re.IGNORECASE)
    product = re.search(r"PRODUCT:\s*(.+?)(?:\n|$)", content, re.IGNORECASE)

    return Estimate(
        ounces=float(ounces.group(1)) if ounces else None,
        classification="disposable-bottle",
        liquid_type=liquid.group(1).strip() if liquid else None,
        product_name=product.group(1).strip() if product else "Unknown Product",
        barcode=barcode.group(1) if barcode else None,
        raw=content,
    )


def parse_text_response(text: str) -> Estimate:
    content = text or ""
    ounces = DEFAULT_TEXT_OUNCES
    liquid_type = "water"

    answer = re.search(r"FINAL ANSWER:\s*(\d+\.?\d*)\s*oz", content, re.IGNORECASE)
    if answer:
        ounces = float(answer.group(1))

    liquid = re.search(r"LIQUID:\s*([^\n|]+?)(?:\s*\||$)", content, re.IGNORECASE | re.MULTILINE)
    if liquid:
        liquid_type = liquid.group(1).strip()

    return Estimate(
        ounces=round(ounces, 2),
        classification="description",
        liquid_type=liquid_type,
        raw=content,
    )


# --- Providers ---

class InferenceProvider:
    """Interface the strategies depend on."""

    name = "base"

    def analyze_container(self, image: bytes, mime_type: str, *, hand_size: str = "medium") -> Estimate:
        raise NotImplementedError

    def analyze_barcode(self, image: bytes, mime_type: str) -> Estimate:
        raise NotImplementedError

    def analyze_text(self, description: str) -> Estimate:
        raise NotImplementedError


class GeminiInferenceProvider(InferenceProvider):
    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        self.model = model or settings.gemini_model
        if client is not None:
            self._client = client
        else:
            key = api_key or settings.gemini_api_key
            if not key:
                raise RuntimeError("GEMINI_API_KEY is required when AI_MODE=gemini")
            self._client = genai.Client(
                api_key=key,
                http_options=types.HttpOptions(timeout=settings.inference_timeout_seconds * 1000),
            )
        self.max_retries = settings.inference_max_retries
        self.backoff_base = settings.inference_backoff_base_ms / 1000

    def _sleep_before_retry(self, attempt: int) -> None:
        delay = self.backoff_base * (2 ** attempt)
        time.sleep(delay + random.uniform(0, delay))

    def _generate(self, contents, max_output_tokens: int = 200) -> str:
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self._client.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=types.GenerateContentConfig(max_output_tokens=max_output_tokens),
                )
                return (response.text or "").strip()
            except genai_errors.ServerError as e:
                last_error = e
            except genai_errors.ClientError as e:
                if e.code != 429:
                    raise PermanentJobError(f"Inference request rejected: {e}") from e
                last_error = e

            logger.warning(f"Gemini call failed (attempt {attempt + 1}/{self.max_retries}): {last_error}")
            if attempt + 1 < self.max_retries:
                self._sleep_before_retry(attempt)

        raise TransientJobError(f"Inference provider unavailable: {last_error}")

    def analyze_container(self, image: bytes, mime_type: str, *, hand_size: str = "medium") -> Estimate:
        prompt = CONTAINER_PROMPT.format(hand_size=hand_size)
        text = self._generate([prompt, types.Part.from_bytes(data=image, mime_type=mime_type)], 100)
        logger.info(f"Container decision: {text}")
        return parse_container_response(text)

    def analyze_barcode(self, image: bytes, mime_type: str) -> Estimate:
        text = self._generate([BARCODE_PROMPT, types.Part.from_bytes(data=image, mime_type=mime_type)])
        logger.info(f"Barcode decision: {text}")
        return parse_barcode_response(text)

    def analyze_text(self, description: str) -> Estimate:
        text = self._generate(TEXT_PROMPT.format(description=description), 300)
        logger.info(f"Text decision: {text}")
        return parse_text_response(text)


class MockInferenceProvider(InferenceProvider):
    """Deterministic answers so the pipeline runs without paid calls."""

    name = "mock"

    def analyze_container(self, image: bytes, mime_type: str, *, hand_size: str = "medium") -> Estimate:
        return parse_container_response("ESTIMATE:16:reusable-bottle:water")

    def analyze_barcode(self, image: bytes, mime_type: str) -> Estimate:
        return parse_barcode_response(
            "BARCODE: 012345678905\nOUNCES: 16.9\nLIQUID: water\nPRODUCT: Mock Spring Water"
        )

    def analyze_text(self, description: str) -> Estimate:
        lowered = description.lower()
        amount = re.search(r"(\d+\.?\d*)\s*(?:oz|ounce)", lowered)
        liquid = "water"
        best = ""
        for keyword, _ in KEYWORDS:
            if keyword in lowered and len(keyword) > len(best):
                best = keyword
        if best:
            liquid = best
        ounces = amount.group(1) if amount else str(DEFAULT_TEXT_OUNCES)
        return parse_text_response(f"FINAL ANSWER: {ounces} oz | LIQUID: {liquid}")


_provider: Optional[InferenceProvider] = None


def get_provider() -> InferenceProvider:
    global _provider
    if _provider is None:
        if settings.ai_mode.lower() == "gemini":
            _provider = GeminiInferenceProvider()
        else:
            _provider = MockInferenceProvider()
        logger.info(f"Inference provider: {_provider.name}")
    return _provider
