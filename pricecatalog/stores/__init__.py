"""Data stores.

- postgres: engine, session factory, per-unit-of-work transactions with
  optimistic-lock retry
- redis: single-flight locks for batch jobs

Matching and scoring logic lives in services, not here.
"""
