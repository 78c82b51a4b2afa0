"""Form workflows run by the orchestrator.

One handler per domain event: completion bookkeeping, per-answer AI
analysis, follow-up question generation and integration fan-out. Handlers
receive their collaborators through `FormWorkflowDeps` and read immutable
payload snapshots parsed in `contracts`.
"""
