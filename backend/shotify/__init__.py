"""
Shotify Backend — Application Package Initializer
==================================================

What: Marks the `shotify` directory as a Python package.
Who:  Used by uvicorn (`shotify.main:app`), pytest, and the `shotify` console script.

Architecture Note:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │     Services (Image Relay logic)    │  ← URL validation, upstream fetch
    ├─────────────────────────────────────┤
    │   Clients (MongoDB, S3, httpx)      │  ← Built once in the app lifespan
    └─────────────────────────────────────┘

    Shared clients live on `app.state` and reach route handlers through
    FastAPI dependencies; nothing looks them up from module globals.
"""

__version__ = "1.0.0"
