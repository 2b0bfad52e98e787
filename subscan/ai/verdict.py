"""Parsing and coercion of classification verdicts returned by the LLM."""

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

BILLING_CYCLES = ("monthly", "yearly", "quarterly", "weekly")
DEFAULT_BILLING_CYCLE = "monthly"
DEFAULT_CURRENCY = "USD"
DEFAULT_CONFIDENCE = 0.5

_CYCLE_ALIASES = {
    "month": "monthly",
    "monthly": "monthly",
    "mo": "monthly",
    "year": "yearly",
    "yearly": "yearly",
    "annual": "yearly",
    "annually": "yearly",
    "yr": "yearly",
    "quarter": "quarterly",
    "quarterly": "quarterly",
    "week": "weekly",
    "weekly": "weekly",
}

# Largest value a Numeric(10, 2) price column holds
MAX_PRICE = 99_999_999.99

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0", ""}


class VerdictParseError(ValueError):
    """Raised when a model response holds no usable verdict."""

    def __init__(self, message: str, raw_text: Optional[str]):
        super().__init__(message)
        self.raw_text = raw_text


def extract_json_object(text: str) -> str:
    """
    Return the first balanced ``{...}`` object in ``text``.

    Braces inside JSON strings are ignored, so prose or code fences around
    the object do not matter.

    Raises:
        VerdictParseError: If no balanced object exists
    """
    start = text.find("{")
    if start == -1:
        raise VerdictParseError("No JSON object in model response", text)

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    raise VerdictParseError("Unbalanced JSON object in model response", text)


def parse_price(value: Any) -> Optional[float]:
    """Coerce ``9.99``, ``"9.99"``, ``"$9.99"`` or ``"1,299.00 USD"`` to a float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        price = round(float(value), 2)
    elif isinstance(value, str):
        match = _NUMBER_RE.search(value.replace(",", ""))
        if not match:
            return None
        price = round(float(match.group()), 2)
    else:
        return None
    if not 0 <= price <= MAX_PRICE:
        return None
    return price


class ClassificationVerdict(BaseModel):
    """Structured verdict for one email, after coercion."""

    is_subscription: bool
    subscription_name: Optional[str] = None
    price: Optional[float] = None
    currency: str = DEFAULT_CURRENCY
    billing_cycle: str = DEFAULT_BILLING_CYCLE
    next_billing_date: Optional[date] = None
    service_provider: Optional[str] = None
    confidence_score: float = DEFAULT_CONFIDENCE

    @field_validator("is_subscription", mode="before")
    @classmethod
    def _coerce_flag(cls, v: Any) -> bool:
        if isinstance(v, bool):
            return v
        if isinstance(v, int) and v in (0, 1):
            return bool(v)
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise ValueError(f"is_subscription must be a boolean, got {v!r}")

    @field_validator("subscription_name", "service_provider", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            raise ValueError(f"expected text, got {type(v).__name__}")
        v = v.strip()
        if not v or v.lower() in ("null", "none", "n/a", "unknown"):
            return None
        return v[:255]

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, v: Any) -> Optional[float]:
        return parse_price(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _coerce_currency(cls, v: Any) -> str:
        if isinstance(v, str):
            code = v.strip().upper()
            if len(code) == 3 and code.isalpha():
                return code
        return DEFAULT_CURRENCY

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def _coerce_cycle(cls, v: Any) -> str:
        if isinstance(v, str):
            return _CYCLE_ALIASES.get(v.strip().lower(), DEFAULT_BILLING_CYCLE)
        return DEFAULT_BILLING_CYCLE

    @field_validator("next_billing_date", mode="before")
    @classmethod
    def _coerce_date(cls, v: Any) -> Optional[date]:
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, date):
            return v
        if isinstance(v, str):
            try:
                return date.fromisoformat(v.strip()[:10])
            except ValueError:
                return None
        return None

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> float:
        if isinstance(v, str):
            v = v.strip().rstrip("%")
            try:
                v = float(v)
            except ValueError:
                return DEFAULT_CONFIDENCE
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return DEFAULT_CONFIDENCE
        v = float(v)
        if 1.0 < v <= 100.0:
            v = v / 100.0
        return min(1.0, max(0.0, v))

    @property
    def is_positive(self) -> bool:
        """A positive verdict names the subscription it found."""
        return self.is_subscription and bool(self.subscription_name)


def parse_verdict(text: Optional[str]) -> ClassificationVerdict:
    """
    Parse a raw model response into a verdict.

    Raises:
        VerdictParseError: If the response is empty, holds no JSON object,
            or the object does not describe a verdict
    """
    if not text or not text.strip():
        raise VerdictParseError("Empty model response", text)

    candidate = extract_json_object(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise VerdictParseError(f"Invalid JSON in model response: {e}", text) from e

    if not isinstance(data, dict):
        raise VerdictParseError("Model response is not a JSON object", text)

    try:
        return ClassificationVerdict.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise VerdictParseError(
            f"Structurally invalid verdict ({field}: {first.get('msg')})", text
        ) from e
