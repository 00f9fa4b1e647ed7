"""Execution engine that runs a coding-agent CLI over a task backlog.

Each iteration picks the next ready task, hands it to one harness subprocess,
checks the repository afterwards and charges the tokens to the session
budget before deciding whether to continue. Modules:

- `selector`: pure dependency-aware task ordering.
- `harness`: per-harness command lines, subprocess supervision and the
  streaming event parser.
- `budget`: session-scoped token accounting.
- `verifier`: git cleanliness and optional test runs.
- `hooks`: user executables run at lifecycle points.
- `loop`: the state machine tying them together.
"""
