"""TaskPilot - plans goals into ordered sub-tasks with a local chat model
and runs them, with sandboxed command execution."""

__version__ = "0.1.0"
