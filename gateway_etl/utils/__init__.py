"""Shared utilities: configuration, logging, retries and metrics."""
