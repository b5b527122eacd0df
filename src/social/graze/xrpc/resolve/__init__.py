"""
Identity Resolution

This package resolves AT Protocol identifiers (DIDs, handles) to their DID documents
and personal data servers.

Key Components:
- handle.py: Handle resolution via DNS TXT records and HTTPS well-known endpoints
- did.py: did:plc and did:web document resolution and PDS discovery
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via the PLC directory
   - did:web method resolution via did.json on the named host

DIDs of any other method are rejected before any network access.
"""
