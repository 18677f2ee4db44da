"""
Observability module for the cookie harvester.

Structured logging only: every component takes an injectable logger and
emits snake_case events with their context in the `extra` dict.
"""
