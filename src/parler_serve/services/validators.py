"""
Generation Parameter Validation.

Every request passes through validate_generation_params() before a job is
created, so malformed input never reaches the scheduler.

Rules:
    - text, description: required, trimmed, bounded by GenerationLimits
    - temperature: float in [0.0, 2.0], clamped to the nearest bound
    - top_p: float in (0.0, 1.0]; > 1 clamps to 1, <= 0 clamps to top_p_min
    - seed: non-negative integer <= 2**64 - 1; drawn at random when absent

HTML forms send empty strings for untouched inputs, so an empty optional
field is treated as absent rather than as an error.

Error Handling:
    InvalidParameterError(field=...)  - missing, unparseable or non-finite
    TextTooLongError(field=...)       - text/description over the limit

Usage:
    from parler_serve.services.validators import validate_generation_params

    req = validate_generation_params(
        text="Hello there", description="A calm female voice.",
        temperature="1.4", top_p=None, seed=None,
        limits=config.generation,
    )
    req.seed          # random 64-bit seed
    req.clamped       # ()
"""
from __future__ import annotations

import math
import secrets
from typing import Callable, List, Optional, Union

from parler_serve.core.config import GenerationLimits
from parler_serve.core.errors import InvalidParameterError, TextTooLongError
from parler_serve.core.logging import get_logger, warn
from parler_serve.tts.engine import GenerationRequest

_LOG = get_logger("parler-serve.validators")

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0
TOP_P_MAX = 1.0
SEED_MAX = 2 ** 64 - 1

Number = Union[str, int, float, None]


def random_seed() -> int:
    """Draw a fresh unsigned 64-bit seed."""
    return secrets.randbits(64)


def _is_absent(value: Number) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_text_field(field: str, value: Optional[str], max_length: int) -> str:
    """
    Trim and bound a required text field.

    Raises:
        InvalidParameterError: If the field is missing or blank.
        TextTooLongError: If the trimmed value exceeds max_length.
    """
    if value is None or not value.strip():
        raise InvalidParameterError(field, f"{field} is required")

    value = value.strip()
    if len(value) > max_length:
        raise TextTooLongError(field, len(value), max_length)
    return value


def parse_float(field: str, value: Number) -> Optional[float]:
    """
    Parse an optional float field.

    Returns:
        The parsed float, or None when the field is absent.

    Raises:
        InvalidParameterError: If the value is not a finite number.
    """
    if _is_absent(value):
        return None
    if isinstance(value, bool):
        raise InvalidParameterError(field, f"{field} must be a number")
    try:
        parsed = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise InvalidParameterError(field, f"{field} must be a number, got {value!r}")
    if not math.isfinite(parsed):
        raise InvalidParameterError(field, f"{field} must be finite, got {value!r}")
    return parsed


def parse_seed(value: Number) -> Optional[int]:
    """
    Parse an optional seed.

    Accepts integers and integer strings ("42"). Floats are accepted only when
    integral (42.0) since some clients serialize all numbers as floats.

    Raises:
        InvalidParameterError: If the seed is negative, fractional, too large
            or not a number.
    """
    if _is_absent(value):
        return None
    if isinstance(value, bool):
        raise InvalidParameterError("seed", "seed must be an integer")

    if isinstance(value, int):
        seed = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise InvalidParameterError("seed", f"seed must be an integer, got {value!r}")
        seed = int(value)
    else:
        raw = str(value).strip()
        try:
            seed = int(raw, 10)
        except ValueError:
            raise InvalidParameterError("seed", f"seed must be an integer, got {value!r}")

    if seed < 0:
        raise InvalidParameterError("seed", f"seed must be non-negative, got {seed}")
    if seed > SEED_MAX:
        raise InvalidParameterError("seed", f"seed must be at most {SEED_MAX}, got {seed}")
    return seed


def validate_generation_params(
    text: Optional[str],
    description: Optional[str],
    temperature: Number = None,
    top_p: Number = None,
    seed: Number = None,
    limits: Optional[GenerationLimits] = None,
    seed_source: Callable[[], int] = random_seed,
) -> GenerationRequest:
    """
    Validate raw request fields into an immutable GenerationRequest.

    Args:
        text: Prompt to speak.
        description: Natural-language description of the voice and style.
        temperature: Sampling temperature (string or number, optional).
        top_p: Nucleus sampling mass (string or number, optional).
        seed: RNG seed (string or number, optional).
        limits: Length bounds and defaults; GenerationLimits() if omitted.
        seed_source: Called for a fresh seed when none is given.

    Returns:
        GenerationRequest with ``clamped`` listing adjusted fields.

    Raises:
        InvalidParameterError: On missing or malformed fields.
        TextTooLongError: On over-length text or description.
    """
    limits = limits or GenerationLimits()
    clamped: List[str] = []

    text = validate_text_field("text", text, limits.max_text_chars)
    description = validate_text_field("description", description, limits.max_description_chars)

    temp = parse_float("temperature", temperature)
    if temp is None:
        temp = limits.default_temperature
    elif temp < TEMPERATURE_MIN or temp > TEMPERATURE_MAX:
        original = temp
        temp = min(max(temp, TEMPERATURE_MIN), TEMPERATURE_MAX)
        clamped.append("temperature")
        warn(_LOG, "param_clamped", field="temperature", value=original, clamped_to=temp)

    p = parse_float("top_p", top_p)
    if p is None:
        p = limits.default_top_p
    elif p > TOP_P_MAX or p <= 0.0:
        original = p
        p = TOP_P_MAX if p > TOP_P_MAX else limits.top_p_min
        clamped.append("top_p")
        warn(_LOG, "param_clamped", field="top_p", value=original, clamped_to=p)

    parsed_seed = parse_seed(seed)
    seed_generated = parsed_seed is None
    if parsed_seed is None:
        parsed_seed = int(seed_source()) & SEED_MAX

    return GenerationRequest(
        text=text,
        description=description,
        temperature=temp,
        top_p=p,
        seed=parsed_seed,
        seed_generated=seed_generated,
        clamped=tuple(clamped),
    )
