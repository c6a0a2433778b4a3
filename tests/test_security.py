"""Tests for password hashing."""

from userstore.core.security import hash_password, verify_password


def test_hash_and_verify_password():
    hashed = hash_password("somePassword")

    assert hashed.startswith("$argon2id$")
    assert verify_password(hashed, "somePassword")
    assert not verify_password(hashed, "otherPassword")


def test_hashes_are_salted():
    assert hash_password("same") != hash_password("same")


def test_non_argon2_hash_never_matches():
    assert not verify_password("plain-text", "plain-text")
