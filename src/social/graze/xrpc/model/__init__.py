"""
Data Models

This package defines the value types shared by the request executor, the
session and the identity resolver.

Key Models:
- credentials.py: Basic and DPoP-bound session credentials
- result.py: The XrpcResult envelope, error details and rate-limit snapshots
- identity.py: Parsed actor identifiers and DID documents
- responses.py: Bodies of the session and repository calls the agent wraps

All models are immutable or treated as such: a credential change produces a new
credential object, and results are built once per call.
"""
