"""
Identity Resolution

This package resolves AT Protocol identifiers (DIDs, handles) to the DID, handle and
PDS location the OAuth engine needs.

Key Components:
- handle.py: Handle and DID resolution, and the SubjectResolver used by the engine

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints
"""
