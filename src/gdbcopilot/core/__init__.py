"""Chat orchestration core."""
