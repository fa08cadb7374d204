"""Unit tests for password hashing, access tokens and signed storage references."""

from __future__ import annotations

import time

import jwt

from processflow.config import settings
from processflow.core.security import (
    ALGORITHM,
    create_access_token,
    decode_access_token,
    hash_password,
    sign_storage_path,
    verify_password,
    verify_signed_path,
)


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("Senha123")
        assert hashed != "Senha123"
        assert verify_password("Senha123", hashed)
        assert not verify_password("senha123", hashed)

    def test_empty_hash_never_matches(self):
        assert not verify_password("anything", "")


class TestAccessTokens:
    def test_round_trip(self):
        payload = decode_access_token(create_access_token(42, "manager"))
        assert payload["sub"] == "42"
        assert payload["role"] == "manager"
        assert "exp" in payload

    def test_tampered_token_rejected(self):
        token = create_access_token(42)
        header, payload, sig = token.split(".")
        forged = create_access_token(1).split(".")[1]
        assert decode_access_token(f"{header}.{forged}.{sig}") is None

    def test_garbage_rejected(self):
        assert decode_access_token("not-a-token") is None
        assert decode_access_token("a.b.c") is None

    def test_readable_by_standard_jwt_library(self):
        token = create_access_token(7, "admin")
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        assert payload["sub"] == "7"
        assert payload["role"] == "admin"

    def test_accepts_token_from_standard_jwt_library(self):
        token = jwt.encode(
            {"sub": "9", "exp": int(time.time()) + 60}, settings.SECRET_KEY, algorithm=ALGORITHM
        )
        assert decode_access_token(token)["sub"] == "9"

    def test_expired_token_rejected(self):
        token = jwt.encode(
            {"sub": "9", "exp": int(time.time()) - 60}, settings.SECRET_KEY, algorithm=ALGORITHM
        )
        assert decode_access_token(token) is None

    def test_wrong_secret_rejected(self):
        token = jwt.encode(
            {"sub": "9", "exp": int(time.time()) + 60}, "another-secret-key-entirely", algorithm=ALGORITHM
        )
        assert decode_access_token(token) is None


class TestSignedPaths:
    def test_valid_reference_resolves(self):
        token, expires = sign_storage_path("processos/1/abc_nota.pdf", ttl_seconds=60, now=1000)
        assert expires == 1060
        assert verify_signed_path(token, now=1030) == "processos/1/abc_nota.pdf"

    def test_expired_reference_rejected(self):
        token, _ = sign_storage_path("processos/1/abc_nota.pdf", ttl_seconds=60, now=1000)
        assert verify_signed_path(token, now=1061) is None

    def test_tampered_path_rejected(self):
        token, _ = sign_storage_path("processos/1/abc_nota.pdf", ttl_seconds=60, now=1000)
        other, _ = sign_storage_path("processos/2/secret.pdf", ttl_seconds=60, now=1000)
        forged = ".".join([other.split(".")[0], *token.split(".")[1:]])
        assert verify_signed_path(forged, now=1010) is None

    def test_access_token_signature_not_valid_for_storage(self):
        assert verify_signed_path(create_access_token(1)) is None

    def test_each_call_yields_fresh_expiry(self):
        first, _ = sign_storage_path("p", ttl_seconds=60, now=1000)
        second, _ = sign_storage_path("p", ttl_seconds=60, now=2000)
        assert first != second
