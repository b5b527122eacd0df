"""
AT Protocol Request Layer

Key Components:
- dpop.py: DPoP proof construction (RFC 9449) for proof-bound credentials
- chain.py: Middleware chain for XRPC requests (authorization, nonce rotation,
  metrics, debug logging)

Every authenticated request passes through the chain, which attaches the current
credential, signs a fresh proof per attempt and retries once when the server rotates
a stale DPoP nonce.
"""
