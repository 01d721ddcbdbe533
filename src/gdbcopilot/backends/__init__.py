"""Debugger engines."""
