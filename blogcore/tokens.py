"""
Signed session tokens (JWT-compatible HS256 layout).

A token is three base64url segments, header.payload.signature, where the
signature is an HMAC-SHA256 of "header.payload" under the process secret.
The payload carries the caller's claims plus 'iat', 'exp' and 'jti'.
Verification is stateless: anyone holding the secret can check a token
without touching storage, and changing the secret invalidates every token
issued under the old one.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from blogcore.errors import InvalidSignature, MalformedToken, TokenExpired
from blogcore.settings import TOKEN_TTL_SECONDS

logger = logging.getLogger(__name__)

HEADER = {'alg': 'HS256', 'typ': 'JWT'}
REGISTERED_CLAIMS = ('iat', 'exp', 'jti')

Clock = Callable[[], float]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64decode(segment: str) -> bytes:
    padded = segment + '=' * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii'))


def _create_signature(signing_input: str, secret: str) -> str:
    """Create HMAC signature for token"""
    digest = hmac.new(
        secret.encode('utf-8'),
        signing_input.encode('ascii'),
        hashlib.sha256
    ).digest()
    return _b64encode(digest)


def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        value = json.loads(_b64decode(segment).decode('utf-8'))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise MalformedToken("Token is not valid") from e
    if not isinstance(value, dict):
        raise MalformedToken("Token is not valid")
    return value


def issue_token(claims: Dict[str, Any], secret: str, ttl: float,
                now: Optional[float] = None) -> str:
    """Create a signed token carrying `claims` that expires `ttl` seconds from now"""
    reserved = set(REGISTERED_CLAIMS) & set(claims)
    if reserved:
        raise ValueError(f"Claims cannot override {', '.join(sorted(reserved))}")

    issued_at = time.time() if now is None else now
    payload = {
        **claims,
        'iat': issued_at,
        'exp': issued_at + ttl,
        'jti': uuid.uuid4().hex,
    }

    header_b64 = _b64encode(json.dumps(HEADER, separators=(',', ':')).encode('utf-8'))
    payload_b64 = _b64encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))
    signing_input = f"{header_b64}.{payload_b64}"
    return f"{signing_input}.{_create_signature(signing_input, secret)}"


def decode_token(token: str, secret: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Verify a token and return its whole payload, registered claims included.

    Raises MalformedToken, InvalidSignature or TokenExpired. The signature
    is checked before the expiry so a forged 'exp' is never trusted.
    """
    if not isinstance(token, str):
        raise MalformedToken("Token is not valid")

    parts = token.split('.')
    if len(parts) != 3 or not all(parts):
        raise MalformedToken("Invalid token format")
    header_b64, payload_b64, signature = parts

    header = _decode_segment(header_b64)
    if header.get('alg') != HEADER['alg']:
        raise MalformedToken("Unsupported token algorithm")

    try:
        expected_signature = _create_signature(f"{header_b64}.{payload_b64}", secret)
    except UnicodeEncodeError as e:
        raise MalformedToken("Token is not valid") from e
    if not hmac.compare_digest(signature.encode('utf-8'), expected_signature.encode('ascii')):
        raise InvalidSignature("Invalid token signature")

    payload = _decode_segment(payload_b64)
    expires_at = payload.get('exp')
    if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
        raise MalformedToken("Token has no expiry")

    current = time.time() if now is None else now
    if current > expires_at:
        raise TokenExpired("Token has expired")

    return payload


def verify_token(token: str, secret: str, now: Optional[float] = None) -> Dict[str, Any]:
    """Verify a token and return the claims it was issued with"""
    payload = decode_token(token, secret, now)
    return {k: v for k, v in payload.items() if k not in REGISTERED_CLAIMS}


class TokenService:
    """Issues and verifies session tokens under one secret and TTL"""

    def __init__(self, secret: str, ttl: float = TOKEN_TTL_SECONDS, clock: Clock = time.time):
        self._secret = secret
        self.ttl = ttl
        self._clock = clock

    def issue(self, claims: Dict[str, Any], ttl: Optional[float] = None) -> str:
        return issue_token(claims, self._secret, self.ttl if ttl is None else ttl, now=self._clock())

    def verify(self, token: str) -> Dict[str, Any]:
        return verify_token(token, self._secret, now=self._clock())

    def decode(self, token: str) -> Dict[str, Any]:
        return decode_token(token, self._secret, now=self._clock())
