"""Job orchestration core for form-processing background work.

Domain events (a form completed, an answer to analyse, a follow-up question
to generate, integrations to fire) become work units in a SQLite-backed
queue. A worker claims one unit at a time and runs its workflow as an
ordered list of steps:

- required steps stop the run on failure, optional ones are isolated;
- every step attempt leaves a `StepResult`, and the run status is derived
  from them rather than tracked separately;
- rate limits, AI credits, idempotency markers and circuit breakers share
  one key/value state store so several workers see the same counters;
- failed runs are retried per event type with category-aware backoff, rate
  limited ones are deferred without spending an attempt.
"""
