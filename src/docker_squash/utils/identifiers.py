"""Layer identifier generation."""

import secrets
from typing import Callable

SHORT_ID_LENGTH = 12


def truncate_id(layer_id: str) -> str:
    """Return the 12 character display form of a layer id."""
    return layer_id[:SHORT_ID_LENGTH]


def is_numeric_id(layer_id: str) -> bool:
    """Check whether an id's short form reads as a plain decimal integer.

    Such ids are ambiguous with legacy numeric references.
    """
    short = truncate_id(layer_id)
    try:
        int(short, 10)
    except ValueError:
        return False
    return True


def new_id(token_hex: Callable[[int], str] = secrets.token_hex) -> str:
    """Generate a random 64 character hex layer id.

    Args:
        token_hex: Random source (override for tests)

    Returns:
        Hex id whose short form is not a plain number
    """
    while True:
        value = token_hex(32)
        if is_numeric_id(value):
            continue
        return value
