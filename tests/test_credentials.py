import bcrypt
import pytest

from blogcore.credentials import WORK_FACTOR, CredentialStore, hash_password, verify_password
from blogcore.errors import CredentialError, ValidationError


def test_hash_verifies_against_same_password():
    hashed = hash_password('secret123')
    assert hashed != 'secret123'
    assert verify_password('secret123', hashed)


def test_hash_rejects_other_password():
    assert not verify_password('secret124', hash_password('secret123'))


def test_hash_is_salted_per_call():
    first = hash_password('secret123')
    second = hash_password('secret123')
    assert first != second
    assert verify_password('secret123', first)
    assert verify_password('secret123', second)


def test_hash_uses_fixed_work_factor():
    hashed = hash_password('secret123')
    assert hashed.startswith(f"$2b${WORK_FACTOR:02d}$")


@pytest.mark.parametrize('bad', [None, 123, b'bytes', '', 'nul\x00byte', 'x' * 73])
def test_malformed_password_is_a_validation_error(bad):
    with pytest.raises(ValidationError):
        hash_password(bad)


def test_verify_validates_plaintext():
    with pytest.raises(ValidationError):
        verify_password('', hash_password('secret123'))


@pytest.mark.parametrize('stored', ['', 'not-a-bcrypt-hash', None])
def test_broken_stored_hash_is_reported(stored):
    with pytest.raises(CredentialError):
        verify_password('secret123', stored)


def test_hash_is_plain_bcrypt():
    hashed = hash_password('correct horse')
    assert bcrypt.checkpw(b'correct horse', hashed.encode('ascii'))


async def test_store_runs_hashing_off_the_loop():
    store = CredentialStore()
    hashed = await store.hash('secret123')
    assert await store.verify('secret123', hashed)
    assert not await store.verify('wrong-password', hashed)


async def test_store_validates_before_scheduling():
    with pytest.raises(ValidationError):
        await CredentialStore().hash('')
