"""Integration tests: real child processes driven through the runner and service."""
