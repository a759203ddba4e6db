from __future__ import annotations

import secrets
import string

from .repository import CODE_LENGTH

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_ATTEMPTS = 1000


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_unique_code(taken: set[str]) -> str:
    """Return a code not in ``taken`` and reserve it there."""

    for _ in range(MAX_ATTEMPTS):
        code = generate_code()
        if code not in taken:
            taken.add(code)
            return code
    raise RuntimeError("could not allocate a unique item code")
