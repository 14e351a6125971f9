"""
Registry package for the Licensing service.

Holds the private record store, the redacted public projection and the
single-writer manager through which every mutation is funneled.
"""
