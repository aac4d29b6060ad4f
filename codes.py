import random
import secrets
from typing import Collection, Optional, Tuple

from constants import CODE_ALPHABET, CODE_LENGTH, FULL_CODE_LENGTH
from logging_config import get_logger

logger = get_logger(__name__)

_system_random = secrets.SystemRandom()


def generate_code(
    in_use: Collection[str],
    length: int = CODE_LENGTH,
    alphabet: str = CODE_ALPHABET,
    rng: Optional[random.Random] = None,
) -> str:
    """Return a random code that is not in ``in_use``.

    The caller is responsible for reserving the returned code; the registry
    does both under its lock.
    """
    rng = rng or _system_random
    attempts = 0
    while True:
        attempts += 1
        code = ''.join(rng.choices(alphabet, k=length))
        if code not in in_use:
            if attempts > 1:
                logger.debug(f"Generated code after {attempts} attempts ({len(in_use)} codes in use)")
            return code


def normalize_code(code) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def _in_alphabet(code: str) -> bool:
    return all(char in CODE_ALPHABET for char in code)


def is_valid_display_code(code: str) -> bool:
    return isinstance(code, str) and len(code) == CODE_LENGTH and _in_alphabet(code)


def is_valid_suffix(suffix: str) -> bool:
    return isinstance(suffix, str) and len(suffix) == 1 and suffix in CODE_ALPHABET


def is_valid_full_code(code: str) -> bool:
    return isinstance(code, str) and len(code) == FULL_CODE_LENGTH and _in_alphabet(code)


def split_full_code(code: str) -> Tuple[str, str]:
    return code[:CODE_LENGTH], code[CODE_LENGTH:]
