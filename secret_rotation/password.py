# Standard library (Python built-in modules)
import secrets
import string
from typing import List

from secret_rotation.errors import InvalidLength, PasswordPolicyError

# ============================================================================
# Character classes
# ============================================================================
UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SYMBOLS = '!@#$%^&*()_-+='

# One guaranteed character per class
MIN_PASSWORD_LENGTH = 4


def generate_password(length: int, exclude_characters: str = '') -> str:
    """
    Purpose:
        Generate a random password containing at least one uppercase letter,
        one lowercase letter, one digit and one symbol.

    Flow Summary:
        1. Remove excluded characters from every character class.
        2. Draw one character from each class.
        3. Fill the remaining length - 4 slots from the union of all classes.
        4. Shuffle the whole buffer with Fisher-Yates.

    Args:
        length (int): Password length, at least 4
        exclude_characters (str, optional): Characters that must never appear

    Returns:
        str: Password of exactly `length` characters

    Raises:
        InvalidLength: If length < 4
        PasswordPolicyError: If exclusions leave a character class empty

    Note:
        All draws go through secrets.randbelow, which uses the OS CSPRNG and
        rejection sampling, so indexes are uniform for any charset size.
    """

    if length < MIN_PASSWORD_LENGTH:
        raise InvalidLength(
            f"Password length must be at least {MIN_PASSWORD_LENGTH} to include every character class, got {length}"
        )

    classes = _character_classes(exclude_characters)
    alphabet = ''.join(classes)

    chars = [_choice(charset) for charset in classes]
    chars.extend(_choice(alphabet) for _ in range(length - len(classes)))
    _shuffle(chars)

    return ''.join(chars)


def _character_classes(exclude_characters: str) -> List[str]:
    excluded = set(exclude_characters)
    classes = []
    for name, charset in (('uppercase', UPPERCASE), ('lowercase', LOWERCASE),
                          ('digit', DIGITS), ('symbol', SYMBOLS)):
        allowed = ''.join(c for c in charset if c not in excluded)
        if not allowed:
            raise PasswordPolicyError(f"Excluded characters leave no {name} characters available")
        classes.append(allowed)
    return classes


def _choice(charset: str) -> str:
    return charset[secrets.randbelow(len(charset))]


def _shuffle(chars: List[str]) -> None:
    # Fisher-Yates, in place
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
