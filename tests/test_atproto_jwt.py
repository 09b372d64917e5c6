"""
Unit tests for social.graze.atoauth.atproto.jwt

Tests cover DPoP key generation, DPoP proof headers and claims (including the
`ath` access token hash), signed DPoP proofs, and client assertion claims.
"""

import base64
import hashlib
import json
from datetime import datetime, timezone

import pytest
from jwcrypto import jwk, jwt

from social.graze.atoauth.atproto.jwt import (
    CLIENT_ASSERTION_TYPE,
    access_token_hash,
    create_client_assertion_claims,
    create_dpop_claims,
    create_dpop_header,
    create_dpop_jwt,
    generate_dpop_key,
)


class TestGenerateDpopKey:
    """Test suite for generate_dpop_key function."""

    def test_generate_dpop_key_returns_tuple(self):
        """Test that generate_dpop_key returns a tuple of key and public dict."""
        dpop_key, public_key_dict = generate_dpop_key()

        assert isinstance(dpop_key, jwk.JWK)
        assert isinstance(public_key_dict, dict)

    def test_generate_dpop_key_uses_correct_algorithm(self):
        """Test that the key is a P-256 EC key."""
        dpop_key, public_key_dict = generate_dpop_key()

        assert public_key_dict["kty"] == "EC"
        assert public_key_dict["crv"] == "P-256"
        assert public_key_dict["alg"] == "ES256"

    def test_generate_dpop_key_public_has_no_private_material(self):
        """Test the public dictionary excludes the private scalar."""
        dpop_key, public_key_dict = generate_dpop_key()

        assert dpop_key.has_private
        assert "d" not in public_key_dict

    def test_generate_dpop_key_multiple_calls_unique(self):
        """Test each key pair is new, with its own key id."""
        first, first_public = generate_dpop_key()
        second, second_public = generate_dpop_key()

        assert first_public["kid"] != second_public["kid"]
        assert first_public["x"] != second_public["x"]


class TestCreateDpopHeader:
    """Test suite for create_dpop_header function."""

    def test_create_dpop_header_values(self):
        """Test the header declares ES256, dpop+jwt and embeds the key."""
        _, public_key_dict = generate_dpop_key()

        header = create_dpop_header(public_key_dict)

        assert header == {"alg": "ES256", "jwk": public_key_dict, "typ": "dpop+jwt"}


class TestAccessTokenHash:
    """Test suite for the ath claim."""

    def test_access_token_hash_matches_sha256(self):
        """Test ath is the unpadded base64url SHA-256 of the token."""
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(b"access-token").digest())
            .decode("ascii")
            .rstrip("=")
        )
        assert access_token_hash("access-token") == expected

    def test_access_token_hash_known_value(self):
        """Test against the RFC 9449 example access token."""
        assert (
            access_token_hash("Kz~8mXK1EalYznwH-LC-1fBAo.4Ljp~zsPE_NeO.gxU")
            == "fUHyO2r2Z3DZ53EsNrWBb0xWXoaNy59IiKCAqksmQEo"
        )


class TestCreateDpopClaims:
    """Test suite for create_dpop_claims function."""

    def test_create_dpop_claims_basic_structure(self):
        """Test the mandatory claims are present."""
        claims = create_dpop_claims("post", "https://auth.example.com/oauth/token")

        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://auth.example.com/oauth/token"
        assert claims["exp"] - claims["iat"] == 30
        assert "nonce" not in claims
        assert "ath" not in claims
        assert "iss" not in claims

    def test_create_dpop_claims_timestamps(self):
        """Test iat and exp come from issued_at."""
        issued_at = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

        claims = create_dpop_claims("GET", "https://pds.example.com", issued_at, 60)

        assert claims["iat"] == int(issued_at.timestamp())
        assert claims["exp"] == int(issued_at.timestamp()) + 60

    def test_create_dpop_claims_with_nonce_issuer_and_token(self):
        """Test optional claims are added when given."""
        claims = create_dpop_claims(
            "GET",
            "https://pds.example.com/xrpc/ping",
            nonce="nonce-1",
            issuer="client",
            access_token="token",
        )

        assert claims["nonce"] == "nonce-1"
        assert claims["iss"] == "client"
        assert claims["ath"] == access_token_hash("token")


class TestCreateDpopJwt:
    """Test suite for create_dpop_jwt function."""

    def test_create_dpop_jwt_signature_verification(self):
        """Test the proof verifies with the embedded public key."""
        dpop_key, public_key_dict = generate_dpop_key()

        token = create_dpop_jwt(dpop_key, "POST", "https://auth.example.com/oauth/par")

        verified = jwt.JWT(jwt=token, key=jwk.JWK(**public_key_dict))
        claims = json.loads(verified.claims)
        header = json.loads(verified.header)
        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://auth.example.com/oauth/par"
        assert header["typ"] == "dpop+jwt"
        assert header["jwk"]["x"] == public_key_dict["x"]

    def test_create_dpop_jwt_signature_verification_fails_wrong_key(self):
        """Test the proof does not verify with another key."""
        dpop_key, _ = generate_dpop_key()
        _, other_public = generate_dpop_key()

        token = create_dpop_jwt(dpop_key, "GET", "https://pds.example.com")

        with pytest.raises(Exception):
            jwt.JWT(jwt=token, key=jwk.JWK(**other_public))

    def test_create_dpop_jwt_unique_jti(self):
        """Test every proof carries a new jti."""
        dpop_key, public_key_dict = generate_dpop_key()
        key = jwk.JWK(**public_key_dict)

        first = json.loads(jwt.JWT(jwt=create_dpop_jwt(dpop_key, "GET", "https://a"), key=key).claims)
        second = json.loads(jwt.JWT(jwt=create_dpop_jwt(dpop_key, "GET", "https://a"), key=key).claims)

        assert first["jti"] != second["jti"]

    def test_create_dpop_jwt_with_nonce_and_access_token(self):
        """Test nonce and ath reach the signed claims."""
        dpop_key, public_key_dict = generate_dpop_key()

        token = create_dpop_jwt(
            dpop_key,
            "GET",
            "https://pds.example.com/xrpc/ping",
            public_key_dict=public_key_dict,
            nonce="server-nonce",
            access_token="token",
        )

        claims = json.loads(jwt.JWT(jwt=token, key=jwk.JWK(**public_key_dict)).claims)
        assert claims["nonce"] == "server-nonce"
        assert claims["ath"] == access_token_hash("token")


class TestCreateClientAssertionClaims:
    """Test suite for client assertion claims."""

    def test_client_assertion_type(self):
        """Test the assertion type is the JWT bearer URN."""
        assert CLIENT_ASSERTION_TYPE == "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

    def test_client_assertion_claims(self):
        """Test the client is issuer and subject, the server is audience."""
        issued_at = datetime(2025, 1, 1, tzinfo=timezone.utc)

        claims = create_client_assertion_claims(
            "https://app.example.com/client-metadata.json",
            "https://auth.example.com",
            issued_at=issued_at,
        )

        assert claims["iss"] == "https://app.example.com/client-metadata.json"
        assert claims["sub"] == "https://app.example.com/client-metadata.json"
        assert claims["aud"] == "https://auth.example.com"
        assert claims["iat"] == int(issued_at.timestamp())
        assert claims["exp"] == int(issued_at.timestamp()) + 60

    def test_client_assertion_jti_unique(self):
        """Test every assertion carries a new jti."""
        first = create_client_assertion_claims("client", "aud")
        second = create_client_assertion_claims("client", "aud")
        assert first["jti"] != second["jti"]
