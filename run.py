"""Run the relay supervisor service."""

import uvicorn

from relay_supervisor.config import config

if __name__ == "__main__":
    uvicorn.run(
        "relay_supervisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
