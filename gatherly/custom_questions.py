"""Custom registration questions configured per event.

Configuration shape stored in ``Event.custom_questions``::

    {"phone": {"enabled": true, "required": false},
     "custom": [{"id": "...", "label": "...", "required": true, "order": 0}]}

Answers are a flat mapping of question id (or ``"phone"``) to text.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger("uvicorn.error")

MAX_ANSWER_LENGTH = 500
PHONE_FORMAT_ERROR = (
    "Please enter a valid phone number in international format (e.g., +994501234567)"
)

_e164_pattern = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_phone_number(phone: str) -> bool:
    """Check a phone number against E.164 (``+`` and up to 15 digits)."""
    return bool(_e164_pattern.match(phone.strip()))


def format_phone_number(phone: str) -> str:
    """Format ``+994501234567`` as ``+994 50 12 34 56 7`` for display."""
    if not phone:
        return ""
    cleaned = re.sub(r"[^\d+]", "", phone)
    match = re.match(r"^\+(\d{1,3})(\d+)$", cleaned)
    if not match:
        return phone
    country_code, number = match.groups()
    pairs = [number[i : i + 2] for i in range(0, len(number), 2)]
    return f"+{country_code} {' '.join(pairs)}"


def _phone_config(config: dict[str, Any] | None) -> dict[str, Any]:
    return (config or {}).get("phone") or {}


def _custom_config(config: dict[str, Any] | None) -> list[dict[str, Any]]:
    return list((config or {}).get("custom") or [])


def has_custom_questions(config: dict[str, Any] | None) -> bool:
    return bool(_phone_config(config).get("enabled")) or bool(_custom_config(config))


def parse_answers(raw: str | dict | None) -> dict[str, str] | None:
    """Decode the ``custom_answers`` form field; malformed JSON is ignored."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed custom_answers payload")
        return None
    return decoded if isinstance(decoded, dict) else None


def validate_answers(
    answers: dict[str, str] | None, config: dict[str, Any] | None
) -> dict[str, str]:
    """Return a mapping of question id to error message; empty when valid."""
    errors: dict[str, str] = {}
    if not config:
        return errors
    answers = answers or {}

    phone = _phone_config(config)
    phone_answer = (answers.get("phone") or "").strip()
    if phone.get("enabled"):
        if phone.get("required") and not phone_answer:
            errors["phone"] = "Phone number is required"
        elif phone_answer and not is_valid_phone_number(phone_answer):
            errors["phone"] = PHONE_FORMAT_ERROR

    for question in _custom_config(config):
        question_id = question.get("id")
        answer = answers.get(question_id) or ""
        if question.get("required") and not answer.strip():
            errors[question_id] = "This field is required"
        elif len(answer) > MAX_ANSWER_LENGTH:
            errors[question_id] = (
                f"Answer must be {MAX_ANSWER_LENGTH} characters or less"
            )
    return errors


def flatten_answers(
    answers: dict[str, str] | None, config: dict[str, Any] | None
) -> dict[str, str]:
    """Map question labels to answers in configured order."""
    flattened: dict[str, str] = {}
    if not config or not answers:
        return flattened
    if _phone_config(config).get("enabled"):
        phone = answers.get("phone")
        flattened["Phone"] = format_phone_number(phone) if phone else "-"
    for question in sorted(_custom_config(config), key=lambda q: q.get("order", 0)):
        flattened[question.get("label", "")] = answers.get(question.get("id")) or "-"
    return flattened
