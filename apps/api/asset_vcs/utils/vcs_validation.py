"""
Name validation shared by branches and tags.

Rules follow git ref conventions so names stay portable to external tooling.
"""

from typing import List

from ..core.exceptions import ValidationError

MAX_REF_NAME_LENGTH = 255

_INVALID_PATTERNS = {
    '..': "consecutive dots",
    '~': "tilde character",
    '^': "caret character",
    ':': "colon character",
    '\\': "backslash character",
    '?': "question mark",
    '*': "asterisk",
    '[': "square bracket",
    '@{': "reflog syntax",
    '//': "consecutive slashes",
}


def get_invalid_ref_name_reasons(name: str, kind: str = "Branch") -> List[str]:
    """
    Get list of reasons why a branch or tag name is invalid.

    Args:
        name: Name to check
        kind: "Branch" or "Tag", used in messages

    Returns:
        List of validation error messages, empty when the name is valid
    """
    if not name or not name.strip():
        return [f"{kind} name cannot be empty"]

    errors = []
    for pattern, description in _INVALID_PATTERNS.items():
        if pattern in name:
            errors.append(f"{kind} name cannot contain {description} ('{pattern}')")

    if any(ch.isspace() for ch in name):
        errors.append(f"{kind} name cannot contain whitespace")
    if len(name) > MAX_REF_NAME_LENGTH:
        errors.append(f"{kind} name cannot exceed {MAX_REF_NAME_LENGTH} characters")
    if name.startswith('.'):
        errors.append(f"{kind} name cannot start with a dot")
    if name.startswith('-'):
        errors.append(f"{kind} name cannot start with a hyphen")
    if name.endswith('.'):
        errors.append(f"{kind} name cannot end with a dot")
    if name.startswith('/'):
        errors.append(f"{kind} name cannot start with a slash")
    if name.endswith('/'):
        errors.append(f"{kind} name cannot end with a slash")
    if name.endswith('.lock'):
        errors.append(f"{kind} name cannot end with '.lock'")

    return errors


def validate_branch_name(name: str) -> bool:
    return not get_invalid_ref_name_reasons(name, "Branch")


def validate_tag_name(name: str) -> bool:
    return not get_invalid_ref_name_reasons(name, "Tag")


def ensure_valid_ref_name(name: str, kind: str = "Branch") -> None:
    """Raise ``ValidationError`` listing every rule the name breaks."""
    reasons = get_invalid_ref_name_reasons(name, kind)
    if reasons:
        raise ValidationError(
            f"Invalid {kind.lower()} name '{name}'",
            details={"name": name, "reasons": reasons},
        )
