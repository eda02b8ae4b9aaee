"""
Entry point for running the relay supervisor via `python -m relay_supervisor`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config


def main():
    """Run the relay supervisor server."""
    uvicorn.run(
        "relay_supervisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
