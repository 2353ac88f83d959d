"""
Input validation for diagram tool calls.

Provides reusable validators that produce clear error messages for all
parameters received from LLM callers, plus the exception types shared
by the engines.
"""

from __future__ import annotations

from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class FragmentError(Exception):
    """Raised when diagram content is malformed (not merely unfinished)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvariantViolation(Exception):
    """Raised when a state breaks an engine invariant.

    This signals a bug in an engine, never bad input, and is the only
    error allowed to escape ``DiagramEngine.apply``.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Primitive validators
# ---------------------------------------------------------------------------

def validate_non_empty_string(value: Any, field_name: str) -> str:
    """Ensure *value* is a non-empty string after stripping whitespace."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' must be a non-empty string.")
    return value.strip()


def validate_string(value: Any, field_name: str, *, allow_empty: bool = True) -> str:
    """Ensure *value* is a string (optionally non-empty).

    Unlike ``validate_non_empty_string`` the value is returned as-is, so
    whitespace inside diagram fragments survives.
    """
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a string, got {type(value).__name__}.")
    if not allow_empty and not value:
        raise ValidationError(f"'{field_name}' must not be empty.")
    return value


def validate_int(
    value: Any,
    field_name: str,
    *,
    min_val: int | None = None,
    max_val: int | None = None,
) -> int:
    """Validate an integer value and optional range."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(
            f"'{field_name}' must be an integer, got {type(value).__name__}."
        )
    if min_val is not None and value < min_val:
        raise ValidationError(
            f"'{field_name}' must be >= {min_val}, got {value}."
        )
    if max_val is not None and value > max_val:
        raise ValidationError(
            f"'{field_name}' must be <= {max_val}, got {value}."
        )
    return value


def validate_bool(value: Any, field_name: str) -> bool:
    """Ensure *value* is a boolean."""
    if not isinstance(value, bool):
        raise ValidationError(
            f"'{field_name}' must be a boolean, got {type(value).__name__}."
        )
    return value


def validate_list(value: Any, field_name: str, *, min_length: int = 0) -> list:
    """Ensure *value* is a list with at least *min_length* items."""
    if not isinstance(value, list):
        raise ValidationError(
            f"'{field_name}' must be a list, got {type(value).__name__}."
        )
    if len(value) < min_length:
        raise ValidationError(
            f"'{field_name}' must have at least {min_length} item(s), got {len(value)}."
        )
    return value


def validate_dict(value: Any, field_name: str) -> dict:
    """Ensure *value* is a dict."""
    if not isinstance(value, dict):
        raise ValidationError(
            f"'{field_name}' must be a dict/object, got {type(value).__name__}."
        )
    return value


def validate_choice(value: Any, field_name: str, allowed: set[str]) -> str:
    """Validate that a string is one of the allowed choices (case-insensitive).

    Returns the lower-cased value.
    """
    if not isinstance(value, str) or not value.strip():
        choices = ", ".join(sorted(allowed))
        raise ValidationError(
            f"'{field_name}' must be one of [{choices}], got {value!r}."
        )
    normalized = value.strip().lower()
    if normalized not in {a.lower() for a in allowed}:
        choices = ", ".join(sorted(allowed))
        raise ValidationError(
            f"'{field_name}' must be one of [{choices}], got '{value}'."
        )
    return normalized


# ---------------------------------------------------------------------------
# Composite / domain validators
# ---------------------------------------------------------------------------

_SESSION_ACTIONS = {"CREATE", "CLOSE", "LIST", "STATE", "EXPORT"}
_DRAWIO_EDIT_OPERATIONS = {"UPDATE", "ADD", "DELETE"}
_EXCALIDRAW_EDIT_OPERATIONS = {"REPLACE_ELEMENTS", "PATCH_ELEMENTS", "DELETE_ELEMENTS"}


def validate_action(value: Any, tool_name: str, allowed: set[str]) -> str:
    """Validate the action parameter for a tool."""
    if not isinstance(value, str) or not value.strip():
        choices = ", ".join(sorted(a.lower() for a in allowed))
        raise ValidationError(
            f"'{tool_name}' requires an 'action' parameter. Valid actions: {choices}."
        )
    normalized = value.strip().upper()
    if normalized not in allowed:
        choices = ", ".join(sorted(a.lower() for a in allowed))
        raise ValidationError(
            f"Unknown {tool_name} action '{value}'. Valid actions: {choices}."
        )
    return value.strip().lower()


def validate_expected_version(value: Any) -> int | None:
    """An optional version precondition must be a non-negative integer."""
    if value is None:
        return None
    return validate_int(value, "expected_version", min_val=0)


def validate_id_list(value: Any, field_name: str = "ids") -> list[str]:
    """Validate a non-empty list of non-empty string identifiers."""
    validate_list(value, field_name, min_length=1)
    for i, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(
                f"'{field_name}[{i}]' must be a non-empty string."
            )
    return value


def validate_cell_edits(value: Any, field_name: str = "edits") -> list[dict[str, str]]:
    """``[{"cell_id": ..., "operation": "add" | "update"}, ...]`` for a graph-xml patch."""
    validate_list(value, field_name, min_length=1)
    for i, edit in enumerate(value):
        validate_dict(edit, f"{field_name}[{i}]")
        validate_non_empty_string(edit.get("cell_id"), f"{field_name}[{i}].cell_id")
        validate_choice(edit.get("operation"), f"{field_name}[{i}].operation", {"add", "update"})
    return value


def validate_elements_payload(value: Any, field_name: str, *, min_length: int = 0) -> Any:
    """Element-json content: a list of objects, a scene object or JSON text.

    JSON text is only type-checked here; parsing (and reporting a parse
    failure as a malformed fragment) is left to the engine.
    """
    if isinstance(value, str):
        if min_length and not value.strip():
            raise ValidationError(f"'{field_name}' must not be empty.")
        return value
    if isinstance(value, dict):
        validate_list(value.get("elements"), f"{field_name}.elements", min_length=min_length)
        return value
    validate_list(value, field_name, min_length=min_length)
    return value


def validate_drawio_edit(op: Any, index: int) -> None:
    """Validate one ``edit_drawio`` operation dict."""
    if not isinstance(op, dict):
        raise ValidationError(f"Operation at index {index} must be a dict/object.")
    kind = op.get("operation")
    if not isinstance(kind, str) or kind.strip().upper() not in _DRAWIO_EDIT_OPERATIONS:
        raise ValidationError(
            f"Operation at index {index}: 'operation' must be one of add, delete, update."
        )
    if not isinstance(op.get("cell_id"), str) or not op["cell_id"].strip():
        raise ValidationError(f"Operation at index {index}: 'cell_id' must be a non-empty string.")
    if kind.strip().upper() != "DELETE":
        if not isinstance(op.get("new_xml"), str) or not op["new_xml"].strip():
            raise ValidationError(
                f"Operation at index {index}: 'new_xml' is required for {kind.strip().lower()}."
            )


def validate_excalidraw_edit(op: Any, index: int) -> None:
    """Validate one ``edit_excalidraw`` operation dict."""
    if not isinstance(op, dict):
        raise ValidationError(f"Operation at index {index} must be a dict/object.")
    kind = op.get("operation")
    if not isinstance(kind, str) or kind.strip().upper() not in _EXCALIDRAW_EDIT_OPERATIONS:
        choices = ", ".join(sorted(k.lower() for k in _EXCALIDRAW_EDIT_OPERATIONS))
        raise ValidationError(
            f"Operation at index {index}: 'operation' must be one of {choices}."
        )
    if kind.strip().upper() == "DELETE_ELEMENTS":
        validate_id_list(op.get("ids"), f"operations[{index}].ids")
    else:
        validate_list(op.get("elements"), f"operations[{index}].elements", min_length=1)
