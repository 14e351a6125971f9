"""
Authentication helpers for the Licensing service: bearer tokens for the
privileged endpoints and HMAC signatures on inbound payment events.
"""
