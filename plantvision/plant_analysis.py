from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass
from typing import Any

from .vision_providers import VisionProviderError

logger = logging.getLogger(__name__)

VALID_SEVERITY = ("Low", "Medium", "High")
DEFAULT_SEVERITY = "Medium"
HEALTHY_LABEL = "Healthy"
UNABLE_TO_ANALYZE_LABEL = "Unable to analyze"
ERROR_LABEL = "Error"
PARSE_ERROR_LABEL = "Analysis Error"

DEFAULT_MEDIA_TYPE = "image/jpeg"
TEXT_FIELDS = ("symptoms", "causes", "treatment")
TEXT_FIELD_FALLBACKS = {
    "symptoms": "No visible symptoms were described for this image.",
    "causes": "The cause of this condition was not reported.",
    "treatment": "No treatment recommendation was provided. Consult a local plant specialist.",
}

# First "{" through the last "}"; the model may wrap its JSON in prose.
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
DATA_URL_PREFIX_PATTERN = re.compile(r"^\s*data:(image/[a-zA-Z0-9.+-]+);base64,", re.IGNORECASE)

PLANT_DIAGNOSIS_PROMPT = """You are an expert plant pathologist. Analyze the uploaded plant image and provide a detailed diagnosis.

IMPORTANT: Your response must be ONLY a valid JSON object with these exact fields:
{
  "disease": "string - disease name or 'Healthy' if no disease detected",
  "confidence": number - confidence score between 0-100,
  "severity": "string - 'Low', 'Medium', or 'High'",
  "symptoms": "string - visible symptoms observed",
  "causes": "string - what causes this condition",
  "treatment": "string - detailed treatment recommendations"
}

Be accurate and professional. If the image is unclear or not a plant, set disease to "Unable to analyze" and confidence to 0.

Please analyze this plant image for diseases or health issues."""


class AnalysisParseError(ValueError):
    pass


@dataclass
class AnalysisResult:
    disease: str
    confidence: int
    severity: str
    symptoms: str
    causes: str
    treatment: str
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AnalysisOutcome:
    status_code: int
    payload: dict[str, Any]


def build_prompt() -> str:
    return PLANT_DIAGNOSIS_PROMPT


def build_error_result(message: str) -> dict[str, Any]:
    return {
        "error": message,
        "disease": ERROR_LABEL,
        "confidence": 0,
        "severity": DEFAULT_SEVERITY,
        "symptoms": "Analysis failed",
        "causes": "Technical error occurred",
        "treatment": "Please try again or contact support",
        "degraded": True,
    }


def build_parse_fallback() -> AnalysisResult:
    return AnalysisResult(
        disease=PARSE_ERROR_LABEL,
        confidence=0,
        severity=DEFAULT_SEVERITY,
        symptoms="Could not analyze the provided image",
        causes="Image analysis failed",
        treatment="Please try uploading a clearer image of the plant",
        degraded=True,
    )


def strip_data_url_prefix(image_data: str) -> tuple[str, str]:
    """Split a data URL into (base64 payload, media type); raw base64 passes through."""
    match = DATA_URL_PREFIX_PATTERN.match(image_data)
    if not match:
        return re.sub(r"\s+", "", image_data), DEFAULT_MEDIA_TYPE
    media_type = match.group(1).lower()
    if media_type == "image/jpg":
        media_type = DEFAULT_MEDIA_TYPE
    return re.sub(r"\s+", "", image_data[match.end():]), media_type


def extract_json_object(text: str) -> dict[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise AnalysisParseError("Empty response from model")

    match = JSON_OBJECT_PATTERN.search(text)
    if not match:
        raise AnalysisParseError("No JSON found in response")

    candidate = match.group(0)
    try:
        payload = json.loads(candidate, parse_constant=_reject_constant)
    except ValueError:
        # Trailing prose may contain its own "}"; fall back to the first complete object.
        decoder = json.JSONDecoder(parse_constant=_reject_constant)
        try:
            payload, _ = decoder.raw_decode(candidate)
        except ValueError as exc:
            raise AnalysisParseError(f"Model output is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise AnalysisParseError("Model output JSON is not an object")
    return payload


def normalize_analysis_payload(payload: dict[str, Any]) -> AnalysisResult:
    disease = payload.get("disease")
    if not isinstance(disease, str) or not disease.strip():
        raise AnalysisParseError("Invalid analysis format from AI")

    confidence_raw = payload.get("confidence")
    if not _is_real_number(confidence_raw):
        raise AnalysisParseError("Invalid analysis format from AI")

    degraded = False
    confidence = _clamp_confidence(confidence_raw)
    if confidence != confidence_raw:
        logger.warning("Coerced model confidence %r to %s", confidence_raw, confidence)
        degraded = True

    severity = payload.get("severity")
    if severity not in VALID_SEVERITY:
        logger.warning("Replaced out-of-contract severity %r with %s", severity, DEFAULT_SEVERITY)
        severity = DEFAULT_SEVERITY
        degraded = True

    texts: dict[str, str] = {}
    for field_name in TEXT_FIELDS:
        value = payload.get(field_name)
        if isinstance(value, str) and value.strip():
            texts[field_name] = value.strip()
        else:
            texts[field_name] = TEXT_FIELD_FALLBACKS[field_name]
            degraded = True

    return AnalysisResult(
        disease=disease.strip(),
        confidence=confidence,
        severity=severity,
        symptoms=texts["symptoms"],
        causes=texts["causes"],
        treatment=texts["treatment"],
        degraded=degraded,
    )


def strip_markdown_artifacts(text: Any) -> Any:
    if not isinstance(text, str):
        return text
    cleaned = re.sub(r"^\s{0,3}#{1,6}\s*", "", text, flags=re.MULTILINE)
    cleaned = re.sub(r"(\*\*|__)(.+?)\1", r"\2", cleaned)
    cleaned = cleaned.replace("**", "").replace("`", "")
    cleaned = re.sub(r"(?<!\w)\*(?!\s)(.+?)(?<!\s)\*(?!\w)", r"\1", cleaned)
    cleaned = cleaned.strip()
    return cleaned or text.strip()


class PlantAnalysisService:
    def __init__(self, *, provider: Any) -> None:
        self.provider = provider

    def analyze_image(self, image_base64: Any) -> AnalysisOutcome:
        if not self.provider.configured:
            label = getattr(self.provider, "label", "Vision")
            logger.error("%s API key not configured; refusing analysis", label)
            return AnalysisOutcome(500, build_error_result(f"{label} API key not configured"))

        if not isinstance(image_base64, str) or not image_base64.strip():
            return AnalysisOutcome(200, build_error_result("No image provided"))

        image_data, media_type = strip_data_url_prefix(image_base64)
        if not image_data:
            return AnalysisOutcome(200, build_error_result("No image provided"))

        logger.info(
            "Analyzing plant image with %s (%s, %d base64 chars)",
            getattr(self.provider, "label", "vision provider"),
            media_type,
            len(image_data),
        )
        try:
            provider_result = self.provider.analyze(
                prompt=build_prompt(),
                image_base64=image_data,
                media_type=media_type,
            )
        except VisionProviderError as exc:
            logger.exception("Vision provider call failed")
            return AnalysisOutcome(500, build_error_result(str(exc)))

        logger.debug("Raw AI response: %s", provider_result.text)

        try:
            parsed = extract_json_object(provider_result.text)
        except AnalysisParseError as exc:
            logger.warning("Failed to parse AI response: %s", exc)
            return AnalysisOutcome(200, build_parse_fallback().to_dict())

        try:
            result = normalize_analysis_payload(parsed)
        except AnalysisParseError as exc:
            logger.error("Rejected AI response: %s", exc)
            return AnalysisOutcome(500, build_error_result(str(exc)))

        logger.info("Processed analysis: %s (%s%%, %s)", result.disease, result.confidence, result.severity)
        return AnalysisOutcome(200, result.to_dict())


def _is_real_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def _clamp_confidence(value: Any) -> int:
    # Arbitrarily large ints cannot go through float(); 1e400 decodes to inf.
    if isinstance(value, int):
        return min(100, max(0, value))
    return int(round(max(0.0, min(100.0, value))))


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name} is not allowed")
