"""External process backend: command rendering and supervised execution."""

from agent_gate.runtime.backend.base import ProcessRequest, ProcessResult
from agent_gate.runtime.backend.commands import AgentCommand
from agent_gate.runtime.backend.process_runner import ProcessRunner, build_filtered_env

__all__ = [
    "AgentCommand",
    "ProcessRequest",
    "ProcessResult",
    "ProcessRunner",
    "build_filtered_env",
]
