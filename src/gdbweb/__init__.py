"""gdbweb: browser front end for gdbcopilot."""
