"""
auth/keys.py -- Signing key loading and algorithm detection.

The JWT algorithm is never configured by hand. It is derived from the private
key so an operator cannot pair (say) an RSA key with an ES256 setting and end
up with tokens nobody can verify.

  EC      P-256 -> ES256, P-384 -> ES384, P-521 -> ES512, other curves rejected
  RSA     modulus >= 4096 -> RS512, >= 3072 -> RS384, otherwise RS256
  OKP     Ed25519 / Ed448 -> EdDSA
  other   rejected

Detection failures raise SigningKeyError. They happen once, at startup, while
the lifespan builds the TokenService -- never on a request path.

Layer rule: no imports from api/, rbac/, or cache/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa

logger = logging.getLogger("gatekeeper.auth")

_EC_CURVES: dict[str, str] = {
    "secp256r1": "ES256",
    "secp384r1": "ES384",
    "secp521r1": "ES512",
}


class SigningKeyError(Exception):
    """The private key is unreadable or of an unsupported type/curve."""


@dataclass(frozen=True)
class SigningMaterial:
    """A private/public key pair plus the one algorithm it is used with."""

    private_key: object
    public_key: object
    algorithm: str


def detect_algorithm(private_key: object) -> str:
    """Return the JWS algorithm identifier for a private key object."""
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        curve = private_key.curve.name
        try:
            return _EC_CURVES[curve]
        except KeyError:
            raise SigningKeyError(f"Unsupported EC curve: {curve}") from None
    if isinstance(private_key, rsa.RSAPrivateKey):
        bits = private_key.key_size
        if bits >= 4096:
            return "RS512"
        if bits >= 3072:
            return "RS384"
        return "RS256"
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return "EdDSA"
    raise SigningKeyError(f"Unsupported key type: {type(private_key).__name__}")


def material_from_private_key(private_key: object) -> SigningMaterial:
    algorithm = detect_algorithm(private_key)
    return SigningMaterial(
        private_key=private_key,
        public_key=private_key.public_key(),
        algorithm=algorithm,
    )


def load_signing_material(path: str | Path) -> SigningMaterial:
    """Read a PEM private key from disk and classify it.

    Raises SigningKeyError if the file is missing, is not an unencrypted PEM
    private key, or holds an unsupported key type.
    """
    key_path = Path(path)
    try:
        pem = key_path.read_bytes()
    except OSError as exc:
        raise SigningKeyError(f"Cannot read private key '{key_path}': {exc}") from exc
    try:
        private_key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningKeyError(f"Invalid private key '{key_path}': {exc}") from exc
    material = material_from_private_key(private_key)
    logger.info("Loaded signing key %s (algorithm=%s)", key_path, material.algorithm)
    return material


def generate_signing_material() -> SigningMaterial:
    """Create a throwaway P-256 key. Dev mode only -- tokens die with the process."""
    logger.warning("WARNING: Using an auto-generated signing key. Tokens will not survive restarts.")
    return material_from_private_key(ec.generate_private_key(ec.SECP256R1()))
