"""
Licensing Service application package.

- app.main: FastAPI routes for webhook ingestion, registry distribution,
  liveness, status and manual issuance.
- app.registry: private/public registry persistence behind a single writer.
- app.issuance: event variants, plan table, key derivation and handlers.
- app.ratelimit: sliding-window limiter with pluggable backends.
- app.auth: bearer token and webhook signature checks.

Guidelines:
- Every registry mutation goes through the write serializer.
- Never serve a public registry that does not verify.
- Failures on the event path propagate so the payment provider retries.
"""
