"""JSON schemas for plan descriptors and persisted session documents.

Descriptors arrive from an external planning layer and the state file can
be edited or truncated on disk, so both are checked with ``jsonschema``
before the coordinator trusts them.
"""

from __future__ import annotations

from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError


class PlanValidationError(ValueError):
    """A task descriptor list failed structural validation."""


_UNIT_SCHEMA: dict[str, Any] = {
    "oneOf": [
        {
            "type": "object",
            "properties": {
                "kind": {"const": "task"},
                "action": {},
            },
            "required": ["kind", "action"],
        },
        {
            "type": "object",
            "properties": {
                "kind": {"const": "stage"},
                "agent": {"type": "string", "minLength": 1},
                "model": {"type": ["string", "null"]},
                "prompt_template": {"type": "string"},
                "timeout_ms": {"type": ["integer", "null"], "minimum": 1},
                "input": {"type": "string"},
            },
            "required": ["kind", "agent", "prompt_template"],
        },
    ]
}

DESCRIPTOR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "wave": {"type": "integer", "minimum": 1},
        "files": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "action": {},
        "unit": _UNIT_SCHEMA,
        "depends_on": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["id", "wave"],
}

PLAN_SCHEMA: dict[str, Any] = {"type": "array", "items": DESCRIPTOR_SCHEMA}

_TIMESTAMP = {"type": ["string", "null"]}

STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "schema": {"type": "integer"},
        "version": {"type": "integer", "minimum": 0},
        "session_id": {"type": "string"},
        "plan_path": {"type": ["string", "null"]},
        "config": {"type": "object"},
        "status": {"enum": ["initializing", "running", "paused", "completed", "failed"]},
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "wave": {"type": "integer", "minimum": 1},
                    "unit": _UNIT_SCHEMA,
                    "files": {"type": "array", "items": {"type": "string"}},
                    "blocked_by": {"type": "array", "items": {"type": "string"}},
                    "status": {
                        "enum": [
                            "pending",
                            "available",
                            "claimed",
                            "executing",
                            "completed",
                            "failed",
                        ]
                    },
                    "claimed_by": {"type": ["string", "null"]},
                    "attempts": {"type": "integer", "minimum": 0},
                },
                "required": ["id", "wave", "unit", "files", "blocked_by", "status"],
            },
        },
        "workers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "status": {
                        "enum": [
                            "idle",
                            "claiming",
                            "executing",
                            "completed",
                            "failed",
                            "terminated",
                        ]
                    },
                    "current_task_id": {"type": ["string", "null"]},
                    "last_heartbeat": {"type": "string"},
                },
                "required": ["id", "status", "last_heartbeat"],
            },
        },
        "ownership": {"type": "object", "additionalProperties": {"type": "string"}},
        "stats": {"type": "object"},
        "started_at": {"type": "string"},
        "updated_at": {"type": "string"},
        "completed_at": _TIMESTAMP,
    },
    "required": [
        "version",
        "session_id",
        "config",
        "status",
        "tasks",
        "workers",
        "ownership",
    ],
}

_plan_validator = Draft202012Validator(PLAN_SCHEMA)
_state_validator = Draft202012Validator(STATE_SCHEMA)


def _format_error(error: ValidationError) -> str:
    location = "/".join(str(part) for part in error.absolute_path) or "<root>"
    return f"{location}: {error.message}"


def validate_descriptors(descriptors: Any) -> None:
    """Raise PlanValidationError listing every structural problem found."""
    errors = sorted(
        _plan_validator.iter_errors(descriptors), key=lambda e: [str(p) for p in e.path]
    )
    if errors:
        raise PlanValidationError("; ".join(_format_error(e) for e in errors))


def state_errors(document: Any) -> list[str]:
    """Return human-readable schema violations for a session document."""
    return [_format_error(e) for e in _state_validator.iter_errors(document)]
