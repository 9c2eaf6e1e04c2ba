"""Property-based tests for the credential vault"""

import pytest
from hypothesis import given, strategies as st, settings

from app.core.encryption import CredentialVault
from app.core.exceptions import AuthTagMismatchError


vault = CredentialVault("property-test-secret", "property-test-salt")
other_vault = CredentialVault("another-property-secret", "property-test-salt")

passwords = st.text(min_size=1, max_size=200)


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(password=passwords)
def test_encrypt_decrypt_round_trip(password):
    assert vault.decrypt(vault.encrypt(password)) == password


@pytest.mark.property
@settings(max_examples=100, deadline=None)
@given(password=passwords)
def test_ciphertext_has_three_hex_and_base64_parts(password):
    iv, tag, data = vault.encrypt(password).split(":")
    assert len(iv) == 32 and len(tag) == 32
    bytes.fromhex(iv)
    bytes.fromhex(tag)
    assert data


@pytest.mark.property
@settings(max_examples=50, deadline=None)
@given(password=passwords)
def test_other_key_never_decrypts(password):
    with pytest.raises(AuthTagMismatchError):
        other_vault.decrypt(vault.encrypt(password))


@pytest.mark.property
@settings(max_examples=50, deadline=None)
@given(password=passwords)
def test_re_encrypt_preserves_plaintext(password):
    assert vault.decrypt(vault.re_encrypt(vault.encrypt(password))) == password
