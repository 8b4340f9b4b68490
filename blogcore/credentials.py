"""
Password hashing with bcrypt.

`hash_password` salts every call with a fresh random salt, so hashing the
same password twice yields two different strings that both verify.
"""

import asyncio
import logging

import bcrypt

from blogcore.errors import CredentialError, ValidationError

logger = logging.getLogger(__name__)

WORK_FACTOR = 10
# bcrypt only looks at the first 72 bytes of its input
MAX_PASSWORD_BYTES = 72


def _encode(plaintext) -> bytes:
    if not isinstance(plaintext, str):
        raise ValidationError("Password must be a string")
    if not plaintext:
        raise ValidationError("Password cannot be empty")
    if '\x00' in plaintext:
        raise ValidationError("Password cannot contain NUL characters")
    encoded = plaintext.encode('utf-8')
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes")
    return encoded


def hash_password(plaintext: str) -> str:
    """Hash a password with a new salt"""
    encoded = _encode(plaintext)
    try:
        hashed = bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=WORK_FACTOR))
    except ValueError as e:
        logger.error(f"bcrypt failed to hash password: {e}")
        raise CredentialError("Failed to hash password") from e
    return hashed.decode('ascii')


def verify_password(plaintext: str, hashed: str) -> bool:
    """
    Check a password against a stored hash.

    A wrong password returns False. A stored value that is not a bcrypt hash
    raises CredentialError instead of being reported as a mismatch.
    """
    encoded = _encode(plaintext)
    if not isinstance(hashed, str) or not hashed:
        raise CredentialError("Stored password hash is missing")
    try:
        return bcrypt.checkpw(encoded, hashed.encode('ascii'))
    except (ValueError, UnicodeEncodeError) as e:
        logger.error(f"bcrypt failed to verify password: {e}")
        raise CredentialError("Stored password hash is not valid") from e


class CredentialStore:
    """Runs the bcrypt primitives off the event loop"""

    async def hash(self, plaintext: str) -> str:
        _encode(plaintext)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, hash_password, plaintext)

    async def verify(self, plaintext: str, hashed: str) -> bool:
        _encode(plaintext)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, verify_password, plaintext, hashed)
