"""Local failures raised before any network access.

Remote failures never raise: they are returned inside an
:class:`~social.graze.xrpc.model.result.XrpcResult`.
"""


class XrpcError(Exception):
    """Base class for errors raised by this package."""


class AuthenticationRequiredError(XrpcError):
    """An operation that needs a session was invoked without a credential."""


class ProofSigningError(XrpcError):
    """The credential's key material could not produce a DPoP proof."""


class InvalidIdentifierError(XrpcError, ValueError):
    """The supplied actor identifier is not a well-formed DID or handle."""


class UnsupportedDidMethodError(InvalidIdentifierError):
    """The DID uses a method this resolver does not support."""

    def __init__(self, did: str, method: str) -> None:
        super().__init__(f"Unsupported DID method '{method}' in {did}")
        self.did = did
        self.method = method


class InvalidServiceProxyError(XrpcError, ValueError):
    """The service proxy value is not a DID with a service fragment."""


class RequestCancelledError(XrpcError):
    """Raised inside the request chain when the caller's cancel event fires."""
