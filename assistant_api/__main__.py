"""
Entry point for running the assistant API.

Usage:
    python -m assistant_api

Host, port and log level come from API_HOST, API_PORT and LOG_LEVEL
(default http://0.0.0.0:8000).
"""
import uvicorn

from assistant_api.server import load_local_env
from command_pipeline.config import get_config
from logging_setup import setup_logging

if __name__ == "__main__":
    load_local_env()
    config = get_config()
    setup_logging(level=config.log_level, use_json=True)

    uvicorn.run(
        "assistant_api.server:app",
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
    )
