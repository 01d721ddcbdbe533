"""gdbcopilot: GDB session orchestration with an LLM assistant."""

__version__ = "0.1.0"
