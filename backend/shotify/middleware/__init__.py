# Middleware package init
"""
Shotify Backend — Middleware Package
======================================

Middleware Chain:
    Request → [Request ID] → [Logging] → Route Handler

    Request ID runs first so the logging middleware and every handler log
    line can read the correlation ID from the ContextVar.
"""
