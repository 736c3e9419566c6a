"""Call coordination runtime for external generative CLI processes.

Why not Celery / Dramatiq / tenacity?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing or retrying in the abstract, it is the
boundary between concurrent workflow callers and a subprocess that takes
minutes, can hang silently, can crash mid-call and carries an opaque resume
token:

- Per-call supervision with an idle timer and a wall-clock timer that kill
  the whole process tree.
- Incremental decoding of the agent's JSONL event stream.
- Rate-limit flow control that never burns a retry slot, kept apart from
  resume/continuation handling.
- Durable at-most-one-active-attempt bookkeeping in SQLite that survives
  restarts without trusting any in-memory state.

A broker would add an operational dependency to a single-node, SQLite-only
tool while still requiring all of the above as custom task logic.
"""
