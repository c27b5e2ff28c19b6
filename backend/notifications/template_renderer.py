"""
Template placeholder handling.

Templates reference entity fields with {{category.field}} tokens. Two policies
apply to the same token syntax:

- Authoring (validate_template): strict. Only the categories and fields in
  AVAILABLE_VARIABLES may be saved.
- Delivery (render): lenient. Anything that cannot be resolved becomes an
  empty string, so a send is never blocked by template data.
"""

import re
from typing import Any, List

from models.types import EntityBundle

AVAILABLE_VARIABLES: dict[str, tuple[str, ...]] = {
    "customer": ("full_name", "email", "phone_number", "address"),
    "agreement": (
        "agreement_number",
        "start_date",
        "end_date",
        "rent_amount",
        "total_amount",
    ),
    "vehicle": ("make", "model", "year", "license_plate"),
}

# Any {{...}} token
VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

FIELD_NAME = re.compile(r"[A-Za-z_]\w*")


class TemplateValidationError(ValueError):
    """Raised when a template uses placeholders outside the allow-list."""

    def __init__(self, invalid_variables: List[str]):
        self.invalid_variables = invalid_variables
        super().__init__(f"Invalid variables found: {', '.join(invalid_variables)}")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _lookup(token: str, bundle: EntityBundle) -> Any:
    """Value for a {{category.field}} token body; None for anything else."""
    parts = token.strip().split(".")
    if len(parts) != 2 or not all(FIELD_NAME.fullmatch(part) for part in parts):
        return None
    category, field = parts
    fields = bundle.get(category) or {}
    return fields.get(field)


def render(content: str, bundle: EntityBundle) -> str:
    """
    Substitute {{category.field}} placeholders with values from the bundle.

    Every {{...}} token is replaced. Missing categories or fields, and tokens
    that are not of the form category.field, resolve to an empty string. Text
    without tokens is returned unchanged.

    Args:
        content: Template body
        bundle: Mapping of category name to a flat field map

    Returns:
        Rendered string
    """
    if not content:
        return content or ""

    def _replace(match: re.Match) -> str:
        return _stringify(_lookup(match.group(1), bundle))

    return VARIABLE_PATTERN.sub(_replace, content)


def find_unresolved_variables(content: str, bundle: EntityBundle) -> List[str]:
    """Placeholders in content that render() would replace with an empty string."""
    unresolved = []
    for match in VARIABLE_PATTERN.finditer(content or ""):
        if _lookup(match.group(1), bundle) is None and match.group(0) not in unresolved:
            unresolved.append(match.group(0))
    return unresolved


def find_invalid_variables(content: str) -> List[str]:
    """
    Return every placeholder that is not in AVAILABLE_VARIABLES.

    A placeholder is invalid when it is not of the form category.field, when
    the category is unknown, or when the field is not declared for it.
    """
    invalid = []
    for match in VARIABLE_PATTERN.finditer(content or ""):
        variable = match.group(1).strip()
        parts = variable.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            invalid.append(match.group(0))
            continue

        category, field = parts
        if field not in AVAILABLE_VARIABLES.get(category, ()):
            invalid.append(match.group(0))

    return invalid


def validate_template(content: str) -> None:
    """
    Reject template content that uses undeclared placeholders.

    Raises:
        TemplateValidationError: If any placeholder is invalid
    """
    invalid = find_invalid_variables(content)
    if invalid:
        raise TemplateValidationError(invalid)


def build_variable_mappings() -> dict[str, dict[str, str]]:
    """Declared placeholders stored alongside a saved template."""
    return {
        category: {field: f"{{{{{category}.{field}}}}}" for field in fields}
        for category, fields in AVAILABLE_VARIABLES.items()
    }
