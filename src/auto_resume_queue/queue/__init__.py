"""File-backed task queue shared by independent processes.

Layers, bottom-up:

- ``persistence``: one JSON document per queue directory, atomic replace on save,
  timestamped backups.
- ``locking``: named directory locks (``mkdir`` test-and-set) with owner files,
  staleness reclamation and diagnostics.
- ``core``: lock-agnostic in-memory task store loaded from the document.
- ``services``: load, mutate and save cycles under the operation's locks.
- ``cache``: process-local index over the document, rebuilt when the file changes.
- ``workflow``: multi-step workflows with error-kind specific recovery.
- ``cleanup``: retention, sweeps, integrity repair and size limits.
"""
