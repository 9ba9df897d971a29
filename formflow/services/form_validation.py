"""
Form Validation — field-level rules for dynamic form templates.

Entry points:
    validate_form_data(template, form_data)    → [{"field_id", "message"}, ...]
    completion_percentage(template, form_data) → 0..100
    condition_met(condition, form_data)        → bool (shared with workflow step conditions)
    nesting_depth_exceeded(data, max_depth)    → bool

Fields are read from the template definition (steps → sections → fields).
A field looks like::

    {"field_id": "email", "type": "email", "label": "Contact e-mail",
     "required": True, "validation": {"max_length": 120}, "options": []}

Unknown keys in form_data are ignored; only template fields are checked.
Every failing field contributes one entry per violated rule, capped at
``FORM_ENGINE["max_validation_errors"]``.
"""

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse

from flask import current_app, has_app_context

from formflow.utils.helpers import parse_date_input, parse_size

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_ERRORS = 50
DEFAULT_FIELD_LIMITS = {
    "text": {"max_length": 255},
    "textarea": {"max_length": 5000},
    "file_upload": {"max_size": "10MB"},
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-()]")


def _engine_settings() -> dict:
    if has_app_context():
        return current_app.config.get("FORM_ENGINE", {}) or {}
    return {}


# ── Template access ──────────────────────────────────────────────────────────


def iter_fields(steps) -> list[dict]:
    """Flatten steps → sections → fields, preserving template order."""
    fields = []
    for step in steps or []:
        for section in step.get("sections") or []:
            for field in section.get("fields") or []:
                fields.append(field)
    return fields


def field_type(field: dict) -> str:
    return field.get("type") or field.get("field_type") or "text"


def _label(field: dict) -> str:
    return field.get("label") or field.get("field_id") or "Field"


def _option_values(field: dict) -> set:
    values = set()
    for opt in field.get("options") or []:
        if isinstance(opt, dict):
            values.add(opt.get("value"))
        else:
            values.add(opt)
    return values


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


# ── Conditions ───────────────────────────────────────────────────────────────


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return None


def condition_met(condition: dict, form_data: dict) -> bool:
    """Evaluate ``{"field", "operator", "value"}`` against form data.

    Operators: equals, not_equals, in, not_in, gt, gte, lt, lte, exists.
    A numeric comparison against a non-numeric value is False.
    """
    actual = (form_data or {}).get(condition.get("field"))
    op = condition.get("operator", "equals")
    expected = condition.get("value")

    if op == "exists":
        return not is_empty(actual)
    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected
    if op in ("in", "not_in"):
        if expected is None:
            expected = []
        if not isinstance(expected, list):
            logger.warning("Condition %r needs a list value, got %r; treating as unmet", op, expected)
            return False
        try:
            found = actual in expected
        except TypeError:
            logger.warning("Condition %r cannot compare %r; treating as unmet", op, actual)
            return False
        return found if op == "in" else not found
    if op in ("gt", "gte", "lt", "lte"):
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return {
            "gt": a > b,
            "gte": a >= b,
            "lt": a < b,
            "lte": a <= b,
        }[op]
    logger.warning("Unknown condition operator %r; treating as unmet", op)
    return False


def conditions_met(conditions, form_data: dict) -> bool:
    """All conditions must hold; no conditions always holds."""
    return all(condition_met(c, form_data) for c in conditions or [])


# ── Structure ────────────────────────────────────────────────────────────────


def nesting_depth_exceeded(data, max_depth: int, _depth: int = 0) -> bool:
    """True if dicts/lists nest more than ``max_depth`` levels below ``data``."""
    if isinstance(data, dict):
        children = data.values()
    elif isinstance(data, list):
        children = data
    else:
        return False
    if _depth >= max_depth:
        return any(isinstance(c, (dict, list)) for c in children)
    return any(nesting_depth_exceeded(c, max_depth, _depth + 1) for c in children)


# ── Per-type rules ───────────────────────────────────────────────────────────


def _check_text(value, rules: dict, limits: dict) -> list[str]:
    if not isinstance(value, str):
        return ["Must be text"]
    errors = []
    min_len = rules.get("min_length")
    max_len = rules.get("max_length", limits.get("max_length"))
    if min_len is not None and len(value) < min_len:
        errors.append(f"Must be at least {min_len} characters")
    if max_len is not None and len(value) > max_len:
        errors.append(f"Must not exceed {max_len} characters")
    pattern = rules.get("pattern")
    if pattern:
        try:
            if not re.search(pattern, value):
                errors.append(rules.get("pattern_message") or "Invalid format")
        except re.error:
            logger.warning("Invalid validation pattern %r in template", pattern)
    return errors


def _check_number(value, rules: dict, ftype: str) -> list[str]:
    if isinstance(value, bool):
        return ["Must be a valid number"]
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ["Must be a valid number"]
    if not number.is_finite():
        return ["Must be a valid number"]
    errors = []
    if ftype == "currency" and number < 0:
        errors.append("Must be a valid currency amount")
    if rules.get("min") is not None and number < Decimal(str(rules["min"])):
        errors.append(f"Must be at least {rules['min']}")
    if rules.get("max") is not None and number > Decimal(str(rules["max"])):
        errors.append(f"Must not exceed {rules['max']}")
    return errors


def _check_date(value, rules: dict) -> list[str]:
    try:
        parsed = parse_date_input(value)
    except ValueError:
        return ["Invalid date format"]
    errors = []
    try:
        min_date = parse_date_input(rules.get("min_date"))
        max_date = parse_date_input(rules.get("max_date"))
    except ValueError:
        logger.warning("Invalid min_date/max_date in template rules: %r", rules)
        return errors
    if min_date and parsed < min_date:
        errors.append(f"Date must be after {rules['min_date']}")
    if max_date and parsed > max_date:
        errors.append(f"Date must be before {rules['max_date']}")
    return errors


def _check_file(value, rules: dict, limits: dict) -> list[str]:
    files = value if isinstance(value, list) else [value]
    max_size = parse_size(rules.get("max_size", limits.get("max_size", "10MB")))
    allowed = set(rules.get("allowed_types") or [])
    errors = []
    for f in files:
        if not isinstance(f, dict) or not f.get("name"):
            errors.append("Invalid file upload data")
            continue
        size = f.get("size")
        if max_size is not None and isinstance(size, (int, float)) and size > max_size:
            errors.append(f"File size exceeds {rules.get('max_size', limits.get('max_size'))}")
        if allowed:
            name = str(f["name"])
            extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
            if extension not in allowed and f.get("type") not in allowed:
                errors.append("File type not allowed")
    return errors


def _check_json(value, max_depth: int) -> list[str]:
    if isinstance(value, (dict, list)):
        return []
    if not isinstance(value, str):
        return ["Must be valid JSON"]
    too_deep = [f"Exceeds maximum nesting depth of {max_depth}"]
    try:
        parsed = json.loads(value)
    except RecursionError:
        return too_deep
    except ValueError:
        return ["Must be valid JSON"]
    # the field itself already sits one level below the form_data root
    if nesting_depth_exceeded(parsed, max_depth - 1):
        return too_deep
    return []


def _check_choice(value, field: dict, multiple: bool) -> list[str]:
    allowed = _option_values(field)
    if multiple:
        if not isinstance(value, list):
            return ["Must be a list of options"]
        unknown = [v for v in value if v not in allowed]
        return [f"Invalid option(s): {', '.join(map(str, unknown))}"] if unknown else []
    if allowed and value not in allowed:
        return [f"Invalid option: {value}"]
    return []


def validate_field(field: dict, value, limits: dict | None = None,
                   max_depth: int = DEFAULT_MAX_DEPTH) -> list[str]:
    """Return the messages for one non-empty field value."""
    ftype = field_type(field)
    rules = field.get("validation") or {}
    limits = limits or {}

    if ftype in ("text", "textarea"):
        return _check_text(value, rules, limits)
    if ftype == "email":
        if not isinstance(value, str) or not _EMAIL_RE.match(value):
            return ["Invalid email format"]
        return _check_text(value, rules, {})
    if ftype == "phone":
        if not isinstance(value, str) or not _PHONE_RE.match(_PHONE_STRIP_RE.sub("", value)):
            return ["Must be a valid phone number"]
        return []
    if ftype == "url":
        parsed = urlparse(value) if isinstance(value, str) else None
        if not parsed or parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ["Must be a valid URL"]
        return []
    if ftype in ("number", "currency"):
        return _check_number(value, rules, ftype)
    if ftype == "date":
        return _check_date(value, rules)
    if ftype in ("select", "radio"):
        return _check_choice(value, field, multiple=False)
    if ftype in ("checkbox", "multiselect"):
        return _check_choice(value, field, multiple=True)
    if ftype == "boolean":
        return [] if isinstance(value, bool) else ["Must be true or false"]
    if ftype in ("json", "structured"):
        return _check_json(value, max_depth)
    if ftype == "file_upload":
        return _check_file(value, rules, limits)
    return []


def _is_required(field: dict, form_data: dict) -> bool:
    if field.get("required"):
        return True
    required_if = field.get("required_if")
    if required_if:
        conditions = required_if if isinstance(required_if, list) else [required_if]
        return conditions_met(conditions, form_data)
    return False


def validate_form_data(template, form_data: dict) -> list[dict]:
    """Validate ``form_data`` against every field of the template."""
    settings = _engine_settings()
    max_depth = settings.get("max_nesting_depth", DEFAULT_MAX_DEPTH)
    max_errors = settings.get("max_validation_errors", DEFAULT_MAX_ERRORS)
    field_limits = settings.get("field_limits", DEFAULT_FIELD_LIMITS)

    if not isinstance(form_data, dict):
        return [{"field_id": "form_data", "message": "Form data must be an object"}]
    if nesting_depth_exceeded(form_data, max_depth):
        return [{
            "field_id": "form_data",
            "message": f"Form data exceeds maximum nesting depth of {max_depth}",
        }]

    errors: list[dict] = []
    for field in iter_fields(template.steps):
        field_id = field.get("field_id")
        if not field_id:
            continue
        value = form_data.get(field_id)
        if is_empty(value):
            if _is_required(field, form_data):
                errors.append({"field_id": field_id, "message": f"{_label(field)} is required"})
        else:
            limits = field_limits.get(field_type(field), {})
            for message in validate_field(field, value, limits, max_depth):
                errors.append({"field_id": field_id, "message": message})
        if len(errors) >= max_errors:
            logger.info("Validation stopped after %d errors", max_errors)
            return errors[:max_errors]
    return errors


def completion_percentage(template, form_data: dict) -> int:
    """Share of required fields that carry a value (100 when none are required)."""
    required = [f for f in iter_fields(template.steps) if f.get("required") and f.get("field_id")]
    if not required:
        return 100
    filled = sum(1 for f in required if not is_empty((form_data or {}).get(f["field_id"])))
    return round(filled * 100 / len(required))
