"""
Process entry point: `python -m shotify` or the `shotify` console script.

uvicorn installs the SIGINT/SIGTERM handlers, stops accepting connections,
and waits up to SHUTDOWN_GRACE_SECONDS for in-flight requests before the
lifespan shutdown runs. A lifespan startup failure exits with status 3.
"""

import uvicorn

from shotify.config import settings


def main() -> None:
    uvicorn.run(
        "shotify.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
        lifespan="on",
    )


if __name__ == "__main__":
    main()
