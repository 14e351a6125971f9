"""
Rate limiting package for the Licensing service.

Sliding-window limiter keyed by client address with an in-process backend
and a Redis backend for deployments with more than one serving process.
"""
