"""
Issuance package for the Licensing service.

Turns typed payment lifecycle events (and administrator requests) into
registry mutations: plan lookup, license key derivation, grant and revoke.
"""
