"""
Unit tests for social.graze.atoauth.atproto.keyset

Tests cover importing private keys from JWK and PEM descriptors, key set
construction, public JWKS output, algorithm selection and signing.
"""

import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwcrypto import jwk, jwt

from social.graze.atoauth.atproto.errors import (
    KeyImportError,
    KeySetEmptyError,
    KeySetError,
    NoUsableKeyError,
)
from social.graze.atoauth.atproto.keyset import KeySet, import_key

from tests.test_helpers import generate_signing_key, signing_key_json


def pem_private_key() -> str:
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


class TestImportKey:
    """Test suite for import_key."""

    def test_import_jwk_json(self):
        """Test a private JWK is imported with its algorithm derived from the curve."""
        key = import_key("fallback", signing_key_json("embedded"))

        public = key.export_public(as_dict=True)
        assert public["kid"] == "embedded"
        assert public["alg"] == "ES256"
        assert public["use"] == "sig"

    def test_import_jwk_without_kid_uses_default(self):
        """Test the default key id is used when the JWK has none."""
        params = jwk.JWK.generate(kty="EC", crv="P-256").export(private_key=True, as_dict=True)
        params.pop("kid", None)

        key = import_key("1", json.dumps(params))

        assert key.export_public(as_dict=True)["kid"] == "1"

    def test_import_pem(self):
        """Test a PEM encoded private key is imported."""
        key = import_key("2", pem_private_key())

        public = key.export_public(as_dict=True)
        assert public["alg"] == "ES256"
        assert key.has_private

    @pytest.mark.parametrize(
        "crv,alg",
        [("P-256", "ES256"), ("P-384", "ES384"), ("P-521", "ES512"), ("secp256k1", "ES256K")],
    )
    def test_curve_algorithms(self, crv, alg):
        """Test each supported curve maps to its algorithm."""
        key = import_key("0", signing_key_json("0", crv))
        assert key.export_public(as_dict=True)["alg"] == alg

    def test_reject_public_key(self):
        """Test a public-only key is rejected."""
        public = generate_signing_key("0").export_public()
        with pytest.raises(KeyImportError):
            import_key("0", public)

    def test_reject_rsa_key(self):
        """Test non-EC keys are rejected."""
        rsa = jwk.JWK.generate(kty="RSA", size=2048, kid="0").export(private_key=True)
        with pytest.raises(KeyImportError):
            import_key("0", rsa)

    def test_reject_mismatched_alg(self):
        """Test a JWK declaring an algorithm its curve cannot use is rejected."""
        params = generate_signing_key("0").export(private_key=True, as_dict=True)
        params["alg"] = "ES384"
        with pytest.raises(KeyImportError):
            import_key("0", json.dumps(params))

    @pytest.mark.parametrize("material", ["", "   ", "not a key", "{\"kty\": \"EC\"}"])
    def test_reject_malformed(self, material):
        """Test empty and malformed material is rejected."""
        with pytest.raises(KeyImportError):
            import_key("0", material)

    def test_import_errors_are_key_set_errors(self):
        """Test import failures share the key set error base."""
        assert issubclass(KeyImportError, KeySetError)


class TestKeySet:
    """Test suite for KeySet."""

    def test_load(self):
        """Test descriptors load in order."""
        key_set = KeySet.load([("0", signing_key_json("0")), ("1", signing_key_json("1", "P-384"))])

        assert len(key_set) == 2
        assert key_set.kids == ["0", "1"]
        assert key_set.algorithms == ["ES256", "ES384"]

    def test_empty_key_set(self):
        """Test a key set needs at least one key."""
        with pytest.raises(KeySetEmptyError):
            KeySet.load([])

    def test_duplicate_kids(self):
        """Test key ids must be unique."""
        with pytest.raises(KeyImportError):
            KeySet.load([("0", signing_key_json("same")), ("1", signing_key_json("same"))])

    def test_public_jwks(self):
        """Test the JWKS document only has public members."""
        key_set = KeySet.load([("0", signing_key_json("0")), ("1", signing_key_json("1"))])

        jwks = key_set.jwks()

        assert [key["kid"] for key in jwks["keys"]] == ["0", "1"]
        for key in jwks["keys"]:
            assert "d" not in key
            assert key["use"] == "sig"

    def test_find_key_first_satisfiable_algorithm(self):
        """Test selection follows algorithm preference, then key order."""
        key_set = KeySet.load(
            [
                ("0", signing_key_json("0", "P-384")),
                ("1", signing_key_json("1")),
                ("2", signing_key_json("2")),
            ]
        )

        algorithm, kid, _ = key_set.find_key(["ES512", "ES256", "ES384"])

        assert algorithm == "ES256"
        assert kid == "1"

    def test_find_key_single_algorithm(self):
        """Test a single algorithm may be passed as a string."""
        key_set = KeySet.load([("0", signing_key_json("0"))])
        assert key_set.find_key("ES256")[1] == "0"

    def test_no_usable_key(self):
        """Test no key for any requested algorithm raises."""
        key_set = KeySet.load([("0", signing_key_json("0"))])
        with pytest.raises(NoUsableKeyError):
            key_set.find_key(["ES384"])

    def test_sign_verifies_with_published_key(self):
        """Test signed tokens verify against the matching JWKS entry."""
        key_set = KeySet.load([("0", signing_key_json("0"))])

        token = key_set.sign({"sub": "client"}, "ES256", header={"typ": "JWT"})

        public_key = jwk.JWK(**key_set.public_jwks()[0])
        verified = jwt.JWT(jwt=token, key=public_key)
        header = json.loads(verified.header)
        assert json.loads(verified.claims) == {"sub": "client"}
        assert header["kid"] == "0"
        assert header["alg"] == "ES256"
        assert header["typ"] == "JWT"
