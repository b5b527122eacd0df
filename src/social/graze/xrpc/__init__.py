"""
Graze XRPC - Authenticated AT Protocol requests and identity resolution

This package implements the request core of an AT Protocol client: it attaches
session credentials to XRPC calls, signs DPoP proofs, keeps the server-issued DPoP
nonce current, and resolves handles and DIDs to the services that host them.

Key Components:
- client.py: XrpcClient, the public entry point for queries and procedures
- atproto: DPoP proofs and the middleware chain that executes requests
- session: Credential store, update notifier and the AtProtoAgent session object
- resolve: Handle and DID resolution
- model: Credentials, result envelopes and identity documents
- app: Settings, metrics and command line bootstrap

Request Flow:
1. The caller invokes a query or procedure by NSID
2. The current credential is read from the store and a fresh proof is signed
3. A rotated nonce in the response is written back to the store and observers
   are notified
4. A response rejecting the old nonce is retried once with the new one
5. The outcome is returned as an XrpcResult; remote failures never raise
"""
