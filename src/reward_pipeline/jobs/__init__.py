"""Durable job queue and staged worker for reward events.

One SQLite-backed table is the only coordination point between processes.
Inbound events become jobs with a stable correlation id; workers lease jobs
with a conditional update, run the pipeline stages in order and persist the
context after every stage, so a retried or reclaimed job resumes where it
stopped. Provider calls carry idempotency keys derived from the correlation
id, which keeps side effects exactly-once-in-effect under at-least-once
delivery.
"""
