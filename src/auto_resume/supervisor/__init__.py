"""Supervision engine for a CLI agent running inside tmux.

Why a SQLite queue plus JSON checkpoints instead of a job framework?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The agent is a single interactive process that can only work on one
instruction at a time, and it may be throttled for hours. What needs to
survive is small and local:

- the queue of work items with at-most-one running task,
- the pending usage-limit wait and the instant work may resume,
- the supervisor's own session bookkeeping (current task, restarts).

SQLite gives transactional conditional updates for the queue and a
heartbeat lock row for single-writer discipline. Checkpoints are plain
JSON documents swapped in atomically, readable by a human with ``cat``.
The loop itself is poll -> classify -> wait or advance, driven by
``SupervisorMonitor``.
"""
