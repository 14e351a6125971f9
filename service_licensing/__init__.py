"""
Licensing Service for the signed license registry.

Issues license records from payment lifecycle events and publishes a
redacted, signed registry for clients to verify offline.
"""
