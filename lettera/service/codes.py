from __future__ import annotations

import re
import secrets

CODE_LENGTH = 6
VERIFICATION_CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_verification_code() -> str:
    """Six-digit numeric code from a CSPRNG, zero-padded over 000000-999999."""
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"
