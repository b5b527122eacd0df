"""Session credentials.

A credential is one of two shapes: a :class:`BasicCredential` that authenticates
with a plain bearer token, or a :class:`ProofBoundCredential` whose access token is
bound to a DPoP key and which tracks the server-issued nonce. Both are immutable;
a nonce rotation produces a new instance through :meth:`ProofBoundCredential.with_nonce`.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union

from jwcrypto import jwk


@dataclass(frozen=True, kw_only=True)
class AccessCredential:
    """Fields shared by every credential shape."""

    service: str
    access_token: str
    refresh_token: Optional[str] = None
    did: Optional[str] = None

    @property
    def can_sign_proof(self) -> bool:
        return False

    @property
    def authorization_scheme(self) -> str:
        return "Bearer"

    def token(self, use_refresh_token: bool = False) -> str:
        if use_refresh_token:
            if self.refresh_token is None:
                raise ValueError("Credential has no refresh token")
            return self.refresh_token
        return self.access_token


@dataclass(frozen=True, kw_only=True)
class BasicCredential(AccessCredential):
    pass


@dataclass(frozen=True, kw_only=True)
class ProofBoundCredential(AccessCredential):
    dpop_key: jwk.JWK = field(repr=False)
    dpop_nonce: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.dpop_key, jwk.JWK):
            raise ValueError("dpop_key must be a jwcrypto JWK")
        if not self.dpop_key.has_private:
            raise ValueError("dpop_key must include private key material")

    @property
    def can_sign_proof(self) -> bool:
        return True

    @property
    def authorization_scheme(self) -> str:
        return "DPoP"

    def with_nonce(self, dpop_nonce: str) -> "ProofBoundCredential":
        return replace(self, dpop_nonce=dpop_nonce)

    def same_binding(self, other: "AccessCredential") -> bool:
        """Whether ``other`` carries the same tokens and DPoP key, whatever its nonce."""
        return (
            isinstance(other, ProofBoundCredential)
            and self.access_token == other.access_token
            and self.refresh_token == other.refresh_token
            and self.dpop_key.thumbprint() == other.dpop_key.thumbprint()
        )


Credential = Union[BasicCredential, ProofBoundCredential]


def create_credential(
    service: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    did: Optional[str] = None,
    dpop_key: Optional[Union[jwk.JWK, Dict[str, Any]]] = None,
    dpop_nonce: Optional[str] = None,
) -> Credential:
    """Build the credential shape implied by the supplied values.

    A DPoP key, either a JWK or its dictionary form, selects a proof-bound
    credential. A nonce without a key is rejected.
    """
    if dpop_key is None:
        if dpop_nonce is not None:
            raise ValueError("A DPoP nonce requires a DPoP key")
        return BasicCredential(
            service=service,
            access_token=access_token,
            refresh_token=refresh_token,
            did=did,
        )

    if isinstance(dpop_key, dict):
        dpop_key = jwk.JWK(**dpop_key)

    return ProofBoundCredential(
        service=service,
        access_token=access_token,
        refresh_token=refresh_token,
        did=did,
        dpop_key=dpop_key,
        dpop_nonce=dpop_nonce,
    )
