"""Workspace tenancy: provisioning and membership grants as sagas.

This package creates workspaces together with everything a usable
workspace needs, and grants workspace membership through invitations.
Both are multi-step writes against a remote store with no cross-call
transactions, so each runs as a saga: on failure every completed step is
undone in reverse order, and a rollback that cannot finish is reported
as needing manual cleanup.

Modules:
- gateway: the sole channel to the remote store (PostgREST, PostgreSQL, memory)
- saga: step definitions, context and the engine
- workflows: workspace provisioning and invitation resolution
- idempotency: deduplication of retried requests
- service: caller-facing entry points
- main: FastAPI application
"""
