"""
validation.py — Validate model-supplied tool arguments against the registry.

validate_arguments() is a pure function of the registry and its input.  It
either returns a freshly built, typed argument object or a failure listing
every violated field, so the model can fix all of them in one retry.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import ValidationError

from capabilities import Capability, CapabilityArgs, REGISTRY, get_capability

ErrorKind = Literal["missing_required_field", "constraint_violation", "type_mismatch", "unknown"]

_MIN_TYPES = {"greater_than_equal", "greater_than", "string_too_short", "too_short"}
_MAX_TYPES = {"less_than_equal", "less_than", "string_too_long", "too_long"}
_CONSTRAINT_CTX_KEYS = ("ge", "gt", "le", "lt", "min_length", "max_length")


@dataclass(frozen=True)
class FieldError:
    field: str
    kind: ErrorKind
    message: str
    constraint: Optional[dict] = None

    def to_dict(self) -> dict:
        out = {"field": self.field, "kind": self.kind, "message": self.message}
        if self.constraint:
            out["constraint"] = self.constraint
        return out


@dataclass(frozen=True)
class Validated:
    capability: Capability
    args: CapabilityArgs


@dataclass(frozen=True)
class ValidationFailure:
    capability_name: str
    kind: Literal["unknown_capability", "schema"]
    errors: tuple[FieldError, ...] = field(default_factory=tuple)
    provided_args: Any = None

    @property
    def message(self) -> str:
        if self.kind == "unknown_capability":
            return f"Unknown function: {self.capability_name}"
        parts = [f"{e.field}: {e.message}" for e in self.errors]
        return "Validation failed: " + ", ".join(parts)

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


ValidationResult = Union[Validated, ValidationFailure]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_arguments(capability_name: str, raw_args: Any) -> ValidationResult:
    """Validate raw arguments for a capability, collecting every violation."""
    capability = get_capability(capability_name)
    if capability is None:
        return ValidationFailure(capability_name, "unknown_capability", provided_args=raw_args)

    if raw_args is None:
        raw_args = {}
    if not isinstance(raw_args, Mapping):
        return ValidationFailure(
            capability_name,
            "schema",
            (FieldError("arguments", "type_mismatch", "Arguments must be an object"),),
            provided_args=raw_args,
        )

    model = REGISTRY[capability].args_model
    try:
        # Deep copy so the validated object never shares nested state with the raw payload
        args = model.model_validate(copy.deepcopy(dict(raw_args)))
    except ValidationError as e:
        errors = tuple(_to_field_error(err) for err in e.errors())
        return ValidationFailure(capability_name, "schema", errors, provided_args=raw_args)

    return Validated(capability, args)


def _to_field_error(err: dict) -> FieldError:
    loc = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
    err_type = err.get("type", "")
    message = err.get("msg", "Invalid value")
    ctx = err.get("ctx") or {}

    if err_type == "missing":
        return FieldError(loc, "missing_required_field", "Required")

    if err_type in _MIN_TYPES or err_type in _MAX_TYPES:
        bound = next((ctx[k] for k in _CONSTRAINT_CTX_KEYS if k in ctx), None)
        direction = "min" if err_type in _MIN_TYPES else "max"
        return FieldError(loc, "constraint_violation", message, {"type": direction, "value": bound})

    if err_type in ("literal_error", "enum"):
        return FieldError(loc, "type_mismatch", message, {"type": "enum", "value": ctx.get("expected")})

    if err_type == "value_error":
        return FieldError(loc, "constraint_violation", message.removeprefix("Value error, "), {"type": "format"})

    if err_type.endswith(("_type", "_parsing")):
        return FieldError(loc, "type_mismatch", message)

    return FieldError(loc, "unknown", message)


# ---------------------------------------------------------------------------
# Human-readable remediation for the model
# ---------------------------------------------------------------------------

_MISSING_FIELD_MESSAGES = {
    "site_url": "I need to know which website to work with",
    "title": "I need a title for this content",
    "topic": "I need a topic or title for the article",
    "target_keywords": "I need target keywords for SEO optimization",
    "keywords": "I need the keywords to work with",
    "hypothesis": "I need the reasoning behind this idea",
}

_CAPABILITY_HINTS = {
    (Capability.KEYWORDS_ADD_KEYWORDS, "keywords"): "Please provide the keywords you want to add to your strategy",
    (Capability.CONTENT_GENERATE_ARTICLE, "topic"): (
        "Please specify what topic you would like me to write about, "
        "or I can suggest topics based on your keyword opportunities"
    ),
    (Capability.CONTENT_OPTIMIZE_EXISTING, "target_keywords"): (
        "Fetch the keyword strategy first with KEYWORDS_get_strategy"
    ),
}


def _friendly(
    error: FieldError,
    capability: Optional[Capability],
    mentioned: list[str],
) -> tuple[str, Optional[str]]:
    name = error.field
    top = name.split(".", 1)[0]

    if error.kind == "missing_required_field":
        text = _MISSING_FIELD_MESSAGES.get(top, f'The field "{name}" is required but was not provided')
        if top == "keywords" and mentioned:
            quoted = ", ".join(f'"{k}"' for k in mentioned[:3])
            return text, f"You mentioned {quoted}. Should I add {'it' if len(mentioned) == 1 else 'them'} as keywords?"
        return text, _CAPABILITY_HINTS.get((capability, top))

    if error.kind == "constraint_violation" and error.constraint:
        c_type, value = error.constraint.get("type"), error.constraint.get("value")
        if c_type == "format":
            return f"The {name} is not in a valid format: {error.message}", None
        if top == "generate_count" and c_type == "max":
            return (
                f"I can generate up to {value} keywords at a time",
                f"I will generate {value} keywords for you (the maximum per request). "
                "If you need more, I can run multiple rounds",
            )
        operator = "at least" if c_type == "min" else "at most"
        return f"The {name} must be {operator} {value}", None

    if error.kind == "type_mismatch":
        return f"The value provided for {name} is not valid", f"Please check the valid options for {name}"

    return f"There's an issue with {name}: {error.message}", None


_QUOTED = re.compile(r"['\"]([^'\"]+)['\"]")
_INTRODUCED = (
    re.compile(r"(?:for|about|related to)\s+['\"]?([^'\",.]+)['\"]?", re.IGNORECASE),
    re.compile(r"(?:keyword|topic|cluster):\s*['\"]?([^'\",.]+)['\"]?", re.IGNORECASE),
)


def mentioned_keywords(user_message: Optional[str], provided_args: Any = None) -> list[str]:
    """Keywords the user already named, taken from the arguments first, then the message."""
    if isinstance(provided_args, Mapping):
        keywords = provided_args.get("keywords")
        if isinstance(keywords, list):
            names = [k if isinstance(k, str) else (k or {}).get("keyword", "") for k in keywords if isinstance(k, (str, dict))]
            return [n for n in names if n]
        if isinstance(provided_args.get("base_keywords"), list):
            return [k for k in provided_args["base_keywords"] if isinstance(k, str) and k]

    found: list[str] = []
    if isinstance(provided_args, Mapping) and provided_args.get("topic_focus"):
        found.append(str(provided_args["topic_focus"]))
    if user_message:
        found.extend(_QUOTED.findall(user_message))
        for pattern in _INTRODUCED:
            for match in pattern.findall(user_message):
                if match.strip() and match.strip() not in found:
                    found.append(match.strip())
    return [k for k in found if k]


def explain_failure(failure: ValidationFailure, user_message: Optional[str] = None) -> str:
    """Build a numbered, model-facing explanation of everything that went wrong.

    ``user_message`` lets suggestions quote keywords the user already gave.
    """
    if failure.kind == "unknown_capability":
        return f"The function {failure.capability_name} does not exist. Choose one of the offered tools."
    if not failure.errors:
        return "An unknown error occurred"

    capability = get_capability(failure.capability_name)
    mentioned = mentioned_keywords(user_message, failure.provided_args)
    lines = ["I encountered some issues with that request:"]
    numbered = len(failure.errors) > 1
    for i, error in enumerate(failure.errors, start=1):
        text, suggestion = _friendly(error, capability, mentioned)
        lines.append(f"{i}. {text}" if numbered else text)
        if suggestion:
            lines.append(f"   Suggestion: {suggestion}")
    return "\n".join(lines)
