import base64
import json

import pytest

from blogcore.errors import Forbidden, InvalidSignature, MalformedToken, TokenExpired
from blogcore.tokens import TokenService, decode_token, issue_token, verify_token

CLAIMS = {'account_id': 'abc123', 'username': 'alice', 'email': 'a@x.com'}
NOW = 1_700_000_000
TTL = 3 * 24 * 3600


def _segment(data):
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b'=').decode()


def test_token_has_three_segments():
    token = issue_token(CLAIMS, 's3cret', TTL, now=NOW)
    assert token.count('.') == 2


def test_verify_returns_original_claims():
    token = issue_token(CLAIMS, 's3cret', TTL, now=NOW)
    assert verify_token(token, 's3cret', now=NOW) == CLAIMS
    assert verify_token(token, 's3cret', now=NOW + TTL) == CLAIMS


def test_decode_includes_registered_claims():
    payload = decode_token(issue_token(CLAIMS, 's3cret', TTL, now=NOW), 's3cret', now=NOW)
    assert payload['iat'] == NOW
    assert payload['exp'] == NOW + TTL
    assert payload['jti']


def test_every_token_gets_its_own_id():
    first = decode_token(issue_token(CLAIMS, 's3cret', TTL, now=NOW), 's3cret', now=NOW)
    second = decode_token(issue_token(CLAIMS, 's3cret', TTL, now=NOW), 's3cret', now=NOW)
    assert first['jti'] != second['jti']


def test_token_expires_after_ttl():
    token = issue_token(CLAIMS, 's3cret', TTL, now=NOW)
    with pytest.raises(TokenExpired):
        verify_token(token, 's3cret', now=NOW + TTL + 1)


def test_other_secret_is_an_invalid_signature():
    token = issue_token(CLAIMS, 's3cret', TTL, now=NOW)
    with pytest.raises(InvalidSignature):
        verify_token(token, 'rotated', now=NOW)


def test_signature_is_checked_before_expiry():
    token = issue_token(CLAIMS, 's3cret', TTL, now=NOW)
    with pytest.raises(InvalidSignature):
        verify_token(token, 'rotated', now=NOW + 10 * TTL)


def test_tampered_claims_break_the_signature():
    header, _, signature = issue_token(CLAIMS, 's3cret', TTL, now=NOW).split('.')
    forged = _segment({**CLAIMS, 'account_id': 'someone-else', 'iat': NOW, 'exp': NOW + TTL, 'jti': 'x'})
    with pytest.raises(InvalidSignature):
        verify_token(f"{header}.{forged}.{signature}", 's3cret', now=NOW)


@pytest.mark.parametrize('token', [
    '',
    'abc',
    'a.b',
    'a.b.c.d',
    '..',
    'not base64!.payload.signature',
    'é.é.é',
])
def test_malformed_tokens(token):
    with pytest.raises(MalformedToken):
        verify_token(token, 's3cret', now=NOW)


def test_non_string_token_is_malformed():
    with pytest.raises(MalformedToken):
        verify_token(None, 's3cret', now=NOW)


def test_unsupported_algorithm_is_malformed():
    _, payload, signature = issue_token(CLAIMS, 's3cret', TTL, now=NOW).split('.')
    header = _segment({'alg': 'none', 'typ': 'JWT'})
    with pytest.raises(MalformedToken):
        verify_token(f"{header}.{payload}.{signature}", 's3cret', now=NOW)


def test_token_errors_are_forbidden():
    assert issubclass(MalformedToken, Forbidden)
    assert issubclass(InvalidSignature, Forbidden)
    assert issubclass(TokenExpired, Forbidden)


def test_claims_cannot_override_expiry():
    with pytest.raises(ValueError):
        issue_token({**CLAIMS, 'exp': NOW * 2}, 's3cret', TTL, now=NOW)


def test_service_uses_its_clock():
    now = [NOW]
    service = TokenService('s3cret', ttl=60, clock=lambda: now[0])
    token = service.issue(CLAIMS)
    assert service.verify(token) == CLAIMS
    now[0] += 61
    with pytest.raises(TokenExpired):
        service.verify(token)


def test_rotating_service_secret_invalidates_tokens():
    token = TokenService('old', clock=lambda: NOW).issue(CLAIMS)
    with pytest.raises(InvalidSignature):
        TokenService('new', clock=lambda: NOW).verify(token)


def test_fractional_clock_keeps_the_full_ttl():
    now = [1000.9]
    service = TokenService('s3cret', ttl=10, clock=lambda: now[0])
    token = service.issue(CLAIMS)

    now[0] = 1000.9 + 9.5
    assert service.verify(token) == CLAIMS
    now[0] = 1000.9 + 10
    assert service.verify(token) == CLAIMS
    now[0] = 1000.9 + 10.01
    with pytest.raises(TokenExpired):
        service.verify(token)
