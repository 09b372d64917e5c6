"""
Client signing keys.

The KeySet holds the private keys used to sign `private_key_jwt` client
assertions. Its public half is published on the client's `jwks_uri` so that
authorization servers can verify those assertions.

Keys are imported once at startup from importable descriptors (a private JWK
as JSON, or a PEM encoded private key) and are never mutated afterwards.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException

from social.graze.atoauth.atproto.errors import (
    KeyImportError,
    KeySetEmptyError,
    NoUsableKeyError,
)

logger = logging.getLogger(__name__)

CURVE_ALGORITHMS: Dict[str, str] = {
    "P-256": "ES256",
    "P-384": "ES384",
    "P-521": "ES512",
    "secp256k1": "ES256K",
}
"""Signing algorithm for each supported elliptic curve."""

KeyDescriptor = Tuple[str, str]
"""A (default key id, importable key material) pair."""


def import_key(kid: str, importable: str) -> jwk.JWK:
    """
    Import a single private signing key.

    The key id embedded in a JWK takes precedence over `kid`. The algorithm is
    derived from the curve; a JWK that declares a different `alg` is rejected.

    Raises:
        KeyImportError: The material is malformed, public-only, or not a
            supported elliptic curve key.
    """
    importable = importable.strip()
    if not importable:
        raise KeyImportError(f"Key {kid!r} is empty")

    try:
        if importable.startswith("-----BEGIN"):
            key = jwk.JWK.from_pem(importable.encode("utf-8"))
        else:
            key = jwk.JWK.from_json(importable)
    except (JWException, ValueError, TypeError) as e:
        raise KeyImportError(f"Key {kid!r} could not be imported: {type(e).__name__}") from e

    if not key.has_private:
        raise KeyImportError(f"Key {kid!r} is not a private key")

    params: Dict[str, Any] = key.export(private_key=True, as_dict=True)
    if params.get("kty") != "EC":
        raise KeyImportError(f"Key {kid!r} has unsupported key type {params.get('kty')!r}")

    algorithm = CURVE_ALGORITHMS.get(params.get("crv", ""))
    if algorithm is None:
        raise KeyImportError(f"Key {kid!r} has unsupported curve {params.get('crv')!r}")

    declared = params.get("alg")
    if declared is not None and declared != algorithm:
        raise KeyImportError(
            f"Key {kid!r} declares {declared!r} but its curve requires {algorithm!r}"
        )

    params.setdefault("kid", kid)
    params["alg"] = algorithm
    params.setdefault("use", "sig")
    return jwk.JWK(**params)


class KeySet:
    """
    An ordered set of private signing keys with unique key ids.

    Signing picks the first key able to perform the requested algorithm, in
    load order.
    """

    def __init__(self, keys: Sequence[jwk.JWK]) -> None:
        if len(keys) == 0:
            raise KeySetEmptyError("At least one signing key is required")

        self._keys: List[Tuple[str, str, jwk.JWK]] = []
        seen = set()
        for key in keys:
            public = key.export_public(as_dict=True)
            kid = public.get("kid")
            algorithm = public.get("alg")
            if kid is None or algorithm is None:
                raise KeyImportError("Signing keys must carry a kid and an alg")
            if kid in seen:
                raise KeyImportError(f"Duplicate key id {kid!r}")
            seen.add(kid)
            self._keys.append((kid, algorithm, key))

    @classmethod
    def load(cls, descriptors: Iterable[KeyDescriptor]) -> "KeySet":
        """
        Import every descriptor and build a KeySet.

        Raises:
            KeyImportError: Any descriptor fails to import.
            KeySetEmptyError: No descriptor was given.
        """
        keys = [import_key(kid, importable) for kid, importable in descriptors]
        key_set = cls(keys)
        logger.info("Loaded %d signing key(s): %s", len(key_set), ", ".join(key_set.kids))
        return key_set

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def kids(self) -> List[str]:
        return [kid for kid, _, _ in self._keys]

    @property
    def algorithms(self) -> List[str]:
        """Supported algorithms, in key order, without duplicates."""
        return list(dict.fromkeys(algorithm for _, algorithm, _ in self._keys))

    def public_jwks(self) -> List[Dict[str, Any]]:
        """Public members of every key, in load order."""
        return [key.export_public(as_dict=True) for _, _, key in self._keys]

    def jwks(self) -> Dict[str, Any]:
        """JWK Set document for the `jwks_uri` endpoint."""
        return {"keys": self.public_jwks()}

    def find_key(self, algorithms: Union[str, Sequence[str]]) -> Tuple[str, str, jwk.JWK]:
        """
        Select a key for the first satisfiable algorithm.

        Returns:
            Tuple[str, str, jwk.JWK]: (algorithm, kid, key)

        Raises:
            NoUsableKeyError: No loaded key supports any of the algorithms.
        """
        if isinstance(algorithms, str):
            algorithms = [algorithms]

        for algorithm in algorithms:
            for kid, key_algorithm, key in self._keys:
                if key_algorithm == algorithm:
                    return algorithm, kid, key

        raise NoUsableKeyError(
            f"No signing key supports any of {list(algorithms)!r}"
        )

    def sign(
        self,
        claims: Dict[str, Any],
        algorithms: Union[str, Sequence[str]],
        header: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Sign `claims` as a compact JWS with the first usable key."""
        algorithm, kid, key = self.find_key(algorithms)

        token = jwt.JWT(
            header={**(header or {}), "alg": algorithm, "kid": kid},
            claims=claims,
        )
        token.make_signed_token(key)
        return token.serialize()
