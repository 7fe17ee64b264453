"""Task dispatch for one synthesis engine slot.

Each worker process owns exactly one engine slot and drains the shared task
queue sequentially: fetch -> prepare speaker -> synthesize -> ack/requeue ->
report.  Per-engine state (the last applied speaker) lives only inside the
process, so every delivery re-checks its speaker precondition instead of
trusting anything cached from a previous attempt.

Queue exhaustion is detected per consumer with a bounded idle window rather
than a shared "done" signal: other consumers may still requeue work after this
one sees an empty queue.
"""
