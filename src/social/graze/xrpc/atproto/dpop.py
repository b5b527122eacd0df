"""
DPoP proof utilities for AT Protocol requests.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession) JWTs
as specified in RFC 9449. A proof is bound to one HTTP method and URI, to the access
token through its hash, and to the server-issued nonce when one is known.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException
from ulid import ULID

from social.graze.xrpc.errors import ProofSigningError
from social.graze.xrpc.model.credentials import AccessCredential

DPOP_HEADER = "DPoP"
DPOP_NONCE_HEADER = "DPoP-Nonce"

_EC_CURVE_ALGORITHMS = {
    "P-256": "ES256",
    "P-384": "ES384",
    "secp256k1": "ES256K",
}


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier for tracking and validation.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def signing_algorithm(dpop_key: jwk.JWK) -> str:
    """Select the JWS algorithm for a key.

    Raises:
        ProofSigningError: If the key type or curve has no supported algorithm.
    """
    key_type = dpop_key.get("kty")
    if key_type == "EC":
        algorithm = _EC_CURVE_ALGORITHMS.get(dpop_key.get("crv"))
        if algorithm is not None:
            return algorithm
    elif key_type == "RSA":
        return "RS256"
    elif key_type == "OKP" and dpop_key.get("crv") == "Ed25519":
        return "EdDSA"
    raise ProofSigningError(
        f"Unsupported DPoP key type {key_type!r} / curve {dpop_key.get('crv')!r}"
    )


def access_token_hash(access_token: str) -> str:
    """Base64url encoded SHA-256 of the access token, without padding (``ath``)."""
    hashed = hashlib.sha256(access_token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def normalize_htu(http_uri: str) -> str:
    """Strip the query and fragment from a request URI for the ``htu`` claim."""
    parts = urlsplit(http_uri)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def create_dpop_header(dpop_key: jwk.JWK) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key."""
    return {
        "alg": signing_algorithm(dpop_key),
        "jwk": dpop_key.export_public(as_dict=True),
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request; query and fragment are dropped
        access_token: Access token the proof accompanies, hashed into ``ath``
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Server-issued nonce; the claim is omitted when None

    Returns:
        Dict[str, Any]: DPoP JWT claims including a fresh ``jti``
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    if nonce is not None:
        claims["nonce"] = nonce

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
) -> str:
    """Create a complete, signed DPoP JWT.

    Returns:
        str: Serialized DPoP JWT ready for use as the ``DPoP`` header value

    Raises:
        ProofSigningError: If the key cannot produce a signature.
    """
    header = create_dpop_header(dpop_key)
    claims = create_dpop_claims(
        http_method, http_uri, access_token, issued_at, expires_in_seconds, nonce
    )

    try:
        dpop_jwt = jwt.JWT(header=header, claims=claims)
        dpop_jwt.make_signed_token(dpop_key)
        return dpop_jwt.serialize()
    except (JWException, ValueError, TypeError) as e:
        raise ProofSigningError(f"Unable to sign DPoP proof: {e}") from e


def create_dpop_proof(
    credential: AccessCredential,
    http_method: str,
    http_uri: str,
    use_refresh_token: bool = False,
    expires_in_seconds: int = 30,
) -> str:
    """Create the DPoP proof for a request made with ``credential``.

    The credential's current nonce is embedded when one has been observed.

    Raises:
        ProofSigningError: If the credential carries no DPoP key or signing fails.
    """
    dpop_key = getattr(credential, "dpop_key", None)
    if not credential.can_sign_proof or dpop_key is None:
        raise ProofSigningError("Credential is not bound to a DPoP key")

    return create_dpop_jwt(
        dpop_key,
        http_method,
        http_uri,
        access_token=credential.token(use_refresh_token),
        expires_in_seconds=expires_in_seconds,
        nonce=getattr(credential, "dpop_nonce", None),
    )
