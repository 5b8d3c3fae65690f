"""
Temporary password generation and password hashing

Temporary passwords are at least 12 characters with one character from
each class guaranteed; the guaranteed characters are shuffled in with the
rest so their position carries no information.
"""

import secrets
import string
from typing import Optional, Tuple

import bcrypt

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = '!@#$%^&*'
ALL_CHARACTERS = LOWERCASE + UPPERCASE + DIGITS + SYMBOLS

TEMP_PASSWORD_MIN_LENGTH = 12
CHOSEN_PASSWORD_MIN_LENGTH = 8

_random = secrets.SystemRandom()


def generate_temp_password(length: int = TEMP_PASSWORD_MIN_LENGTH) -> str:
    """
    Generate a policy-compliant temporary password

    Args:
        length: Total length, at least TEMP_PASSWORD_MIN_LENGTH

    Returns:
        Plaintext password (deliver once, never log)
    """
    if length < TEMP_PASSWORD_MIN_LENGTH:
        raise ValueError(f"Temporary passwords must be at least {TEMP_PASSWORD_MIN_LENGTH} characters")

    characters = [secrets.choice(group) for group in (LOWERCASE, UPPERCASE, DIGITS, SYMBOLS)]
    characters += [secrets.choice(ALL_CHARACTERS) for _ in range(length - len(characters))]
    _random.shuffle(characters)
    return ''.join(characters)


def check_password_policy(password: str,
                          min_length: int = TEMP_PASSWORD_MIN_LENGTH) -> Tuple[bool, Optional[str]]:
    """
    Check a password against the complexity policy

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not password:
        return False, "Password is required"

    if len(password) < min_length:
        return False, f"Password must be at least {min_length} characters"

    if not any(c in LOWERCASE for c in password):
        return False, "Password must contain a lowercase letter"

    if not any(c in UPPERCASE for c in password):
        return False, "Password must contain an uppercase letter"

    if not any(c in DIGITS for c in password):
        return False, "Password must contain a digit"

    if not any(c in SYMBOLS for c in password):
        return False, f"Password must contain one of {SYMBOLS}"

    return True, None


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
