"""Single-task orchestration of an editor-hosted coding agent.

One invocation owns one editor process, one IPC socket and one session
state block:

- ``command`` and ``launcher`` build and spawn the editor process;
- ``evals_runner.ipc`` connects to the agent with bounded retries;
- ``events`` and ``metrics`` turn inbound task events into published events,
  task log lines and persisted telemetry;
- ``lifecycle`` sends the task, enforces the global timeout with
  cancel-then-close, and shuts the editor down gracefully, then forcefully.

Concurrent tasks run as independent invocations that only share the
repository and the event publisher.
"""
