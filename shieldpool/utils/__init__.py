"""Logging, input validation and savepoint helpers."""
