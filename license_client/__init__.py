"""
Client side of the signed license registry.

- fetcher: registry download over HTTPS with a verified offline cache.
- verifier: registry signature, content hash and per-entry signatures.
- tiers: tier -> feature table; unknown tiers resolve to FREE.
- validator: activation workflow and local ``license.json`` handling.

The client only ever holds public keys.
"""
