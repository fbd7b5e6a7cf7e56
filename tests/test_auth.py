"""Tests for Basic and Digest authentication helpers."""

from __future__ import annotations

import base64
import re

import pytest

from shelly_transport.auth import (
    AuthData,
    DigestChallenge,
    basic_auth_header,
    build_digest_authorization,
    calculate_digest_response,
    calculate_ha1,
    digest_auth_data,
    digest_auth_data_from_ha1,
    generate_cnonce,
    hash_hex,
    parse_digest_challenge,
    validate_auth_data,
)
from shelly_transport.errors import ShellyAuthError

RFC_NONCE = "dcd98b7102dd2f0e8b11d0f600bfb0c093"


class TestBasicAuth:
    """Tests for the Basic Authorization header."""

    def test_header_encodes_credentials(self):
        """Test header is 'Basic ' plus base64 of user:password."""
        header = basic_auth_header("admin", "secret")
        assert header.startswith("Basic ")
        assert base64.b64decode(header[6:]) == b"admin:secret"


class TestHashHex:
    """Tests for digest hashing."""

    def test_md5_empty_string(self):
        """Test MD5 of the empty string matches the well-known value."""
        assert hash_hex("") == "d41d8cd98f00b204e9800998ecf8427e"

    def test_sha256_selected_by_algorithm(self):
        """Test SHA-256 produces a 64 character digest."""
        assert len(hash_hex("abc", "SHA-256")) == 64
        assert len(hash_hex("abc", "SHA-256-sess")) == 64

    def test_unknown_algorithm_falls_back_to_md5(self):
        """Test unknown algorithms hash with MD5."""
        assert hash_hex("", "WHATEVER") == "d41d8cd98f00b204e9800998ecf8427e"


class TestDigestResponse:
    """Tests for the digest response calculation."""

    def test_rfc2617_example(self):
        """Test the worked example from RFC 2617 section 3.5."""
        response = calculate_digest_response(
            "Mufasa",
            "Circle Of Life",
            "testrealm@host.com",
            RFC_NONCE,
            "00000001",
            "0a4f113b",
            "auth",
            "GET",
            "/dir/index.html",
        )
        assert response == "6629fae49393a05397450978507c4ef1"

    def test_without_qop_uses_legacy_formula(self):
        """Test that no qop hashes HA1:nonce:HA2."""
        ha1 = hash_hex("user:realm:pass")
        ha2 = hash_hex("GET:/rpc")
        expected = hash_hex(f"{ha1}:nonce:{ha2}")
        response = calculate_digest_response(
            "user", "pass", "realm", "nonce", "00000001", "cn", None, "GET", "/rpc"
        )
        assert response == expected

    def test_response_is_hex(self):
        """Test the response is 32 lowercase hex characters for MD5."""
        response = calculate_digest_response(
            "admin", "password", "shelly", RFC_NONCE, "00000001", "abc", "auth", "POST", "/rpc"
        )
        assert re.fullmatch(r"[0-9a-f]{32}", response)


class TestParseDigestChallenge:
    """Tests for WWW-Authenticate parsing."""

    def test_parse_full_challenge(self):
        """Test all known parameters are extracted."""
        challenge = parse_digest_challenge(
            'Digest realm="shelly", nonce="abc123", qop="auth", '
            'algorithm=SHA-256, opaque="xyz"'
        )
        assert challenge == DigestChallenge(
            realm="shelly",
            nonce="abc123",
            qop="auth",
            algorithm="SHA-256",
            opaque="xyz",
        )

    def test_defaults(self):
        """Test algorithm defaults to MD5 and qop/opaque to None."""
        challenge = parse_digest_challenge('Digest realm="r", nonce="n"')
        assert challenge.algorithm == "MD5"
        assert challenge.qop is None
        assert challenge.opaque is None

    def test_prefers_auth_qop(self):
        """Test 'auth' is chosen when several qop values are offered."""
        challenge = parse_digest_challenge('Digest realm="r", nonce="n", qop="auth-int,auth"')
        assert challenge.qop == "auth"

    def test_quoted_comma_in_realm(self):
        """Test commas inside quoted values do not split parameters."""
        challenge = parse_digest_challenge('Digest realm="a, b", nonce="n"')
        assert challenge.realm == "a, b"

    def test_basic_scheme_rejected(self):
        """Test a non-digest challenge raises ShellyAuthError."""
        with pytest.raises(ShellyAuthError, match="no digest challenge"):
            parse_digest_challenge('Basic realm="shelly"')

    def test_empty_header_rejected(self):
        """Test an empty header raises ShellyAuthError."""
        with pytest.raises(ShellyAuthError):
            parse_digest_challenge("")

    def test_missing_nonce_rejected(self):
        """Test a challenge without nonce raises ShellyAuthError."""
        with pytest.raises(ShellyAuthError, match="missing realm or nonce"):
            parse_digest_challenge('Digest realm="shelly"')


class TestBuildDigestAuthorization:
    """Tests for the Authorization header builder."""

    def test_header_fields(self):
        """Test the header carries the challenge and computed response."""
        challenge = DigestChallenge(realm="testrealm@host.com", nonce=RFC_NONCE, qop="auth")
        header = build_digest_authorization(
            "Mufasa",
            "Circle Of Life",
            challenge,
            "GET",
            "/dir/index.html",
            cnonce="0a4f113b",
        )
        assert header.startswith('Digest username="Mufasa"')
        assert 'realm="testrealm@host.com"' in header
        assert f'nonce="{RFC_NONCE}"' in header
        assert 'uri="/dir/index.html"' in header
        assert 'response="6629fae49393a05397450978507c4ef1"' in header
        assert "qop=auth" in header
        assert "nc=00000001" in header
        assert 'cnonce="0a4f113b"' in header
        assert "algorithm" not in header

    def test_opaque_and_algorithm_echoed(self):
        """Test opaque and non-MD5 algorithm are echoed back."""
        challenge = DigestChallenge(
            realm="r", nonce="n", qop="auth", algorithm="SHA-256", opaque="op"
        )
        header = build_digest_authorization("u", "p", challenge, "POST", "/rpc")
        assert 'opaque="op"' in header
        assert header.endswith("algorithm=SHA-256")
        match = re.search(r'response="([0-9a-f]+)"', header)
        assert match is not None
        assert len(match.group(1)) == 64

    def test_no_qop_omits_nc_and_cnonce(self):
        """Test legacy challenges get no qop, nc or cnonce."""
        challenge = DigestChallenge(realm="r", nonce="n")
        header = build_digest_authorization("u", "p", challenge, "GET", "/")
        assert "qop=" not in header
        assert "nc=" not in header
        assert "cnonce=" not in header

    def test_generated_cnonce_is_random(self):
        """Test generated client nonces differ."""
        assert generate_cnonce() != generate_cnonce()
        assert len(generate_cnonce()) == 16


class TestAuthData:
    """Tests for RPC-level auth objects."""

    def test_to_dict_omits_empty(self):
        """Test empty fields are left out of the envelope object."""
        assert AuthData(username="admin", password="pw").to_dict() == {
            "username": "admin",
            "password": "pw",
        }

    def test_digest_auth_data(self):
        """Test digest auth data matches the HA1-based calculation."""
        auth = digest_auth_data("admin", "pw", "shellyplus1-abc", "1234")
        assert auth.username == "admin"
        assert auth.realm == "shellyplus1-abc"
        assert auth.nonce == "1234"
        assert auth.algorithm == "SHA-256"
        assert auth.nc == 1
        assert len(auth.cnonce) == 32

        ha1 = calculate_ha1("admin", "pw", "shellyplus1-abc")
        ha2 = hash_hex("dummy_method:dummy_uri", "SHA-256")
        expected = hash_hex(f"{ha1}:1234:00000001:{auth.cnonce}:auth:{ha2}", "SHA-256")
        assert auth.response == expected

    def test_from_ha1_never_carries_password(self):
        """Test credentials built from HA1 omit the password."""
        auth = digest_auth_data_from_ha1("admin", "ff" * 32, "realm", "1")
        assert auth.password == ""
        assert "password" not in auth.to_dict()

    def test_validate_basic(self):
        """Test basic credentials need username and password."""
        validate_auth_data(AuthData(username="u", password="p"))
        with pytest.raises(ValueError, match="password is required"):
            validate_auth_data(AuthData(username="u"))

    def test_validate_digest(self):
        """Test digest credentials need realm, nonce, cnonce and nc."""
        validate_auth_data(digest_auth_data("u", "p", "r", "n"))
        with pytest.raises(ValueError, match="realm is required"):
            validate_auth_data(AuthData(username="u", response="x", nonce="n"))
        with pytest.raises(ValueError, match="nc must be positive"):
            validate_auth_data(
                AuthData(username="u", response="x", realm="r", nonce="n", cnonce="c")
            )

    def test_validate_missing(self):
        """Test missing auth data and username are rejected."""
        with pytest.raises(ValueError, match="auth data is required"):
            validate_auth_data(None)
        with pytest.raises(ValueError, match="username is required"):
            validate_auth_data(AuthData(password="p"))
