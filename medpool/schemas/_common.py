from typing import Any


def blank_to_none(value: Any) -> Any:
    """Form fields arrive as "" when left empty; treat them as unset."""
    if isinstance(value, str) and not value.strip():
        return None
    return value
