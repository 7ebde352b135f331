"""
Observability module for orglink.

Structured logging with per-request correlation ids. Production emits
JSON lines; every other environment emits colored text.
"""
