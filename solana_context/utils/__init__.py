"""Shared utilities: configuration, errors, validation, batching and cancellation."""
