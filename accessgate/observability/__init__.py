"""
Observability module for the access gate.

Structured logging with per-session context. Tracing is not wired in;
every decision point logs an event-style message instead.
"""
