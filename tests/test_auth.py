"""Tests for request signing and JWT helpers."""

import time

from jose import jwt

from custody_policy.auth import (
    build_jwt,
    generate_hmac_signature,
    generate_timestamp,
    is_jwt_expired,
)


class TestHmacSignature:
    def test_deterministic(self):
        a = generate_hmac_signature("secret", "1700000000", "GET", "/v1/policies")
        b = generate_hmac_signature("secret", "1700000000", "GET", "/v1/policies")
        assert a == b
        assert len(a) == 64

    def test_method_case_insensitive(self):
        assert generate_hmac_signature("s", "1", "post", "/v1/x", "{}") == \
            generate_hmac_signature("s", "1", "POST", "/v1/x", "{}")

    def test_body_changes_signature(self):
        assert generate_hmac_signature("s", "1", "POST", "/v1/x", '{"a":1}') != \
            generate_hmac_signature("s", "1", "POST", "/v1/x", '{"a":2}')

    def test_timestamp_is_unix_seconds(self):
        ts = generate_timestamp()
        assert ts.isdigit()
        assert abs(int(ts) - time.time()) < 5


class TestJwt:
    def test_claims_and_kid(self):
        token = build_jwt("k", "kid-1", "tenant-0001", "https://api.example.com", algorithm="HS256")
        assert jwt.get_unverified_header(token)["kid"] == "kid-1"
        claims = jwt.get_unverified_claims(token)
        assert claims["sub"] == "tenant-0001"
        assert claims["iss"] == "tenant-0001"
        assert claims["exp"] - claims["iat"] == 3600

    def test_fresh_token_not_expired(self):
        token = build_jwt("k", "kid-1", "t", "aud", algorithm="HS256")
        assert is_jwt_expired(token) is False

    def test_expired_token(self):
        token = build_jwt("k", "kid-1", "t", "aud", algorithm="HS256", ttl_seconds=-10)
        assert is_jwt_expired(token) is True

    def test_leeway(self):
        token = build_jwt("k", "kid-1", "t", "aud", algorithm="HS256", ttl_seconds=30)
        assert is_jwt_expired(token, leeway=60) is True

    def test_garbage_is_expired(self):
        assert is_jwt_expired("not-a-jwt") is True
