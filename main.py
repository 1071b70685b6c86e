#!/usr/bin/env python3
"""
============================================================================
Campus Gate Pass v1.0.0
Server Entry Point
============================================================================

Runs the FastAPI application under uvicorn. The expiry worker starts with
the application lifespan, so one process serves both the API and the
scheduled sweeps.

ENVIRONMENT:
    GATEPASS_HOST / GATEPASS_PORT   - Bind address (default 0.0.0.0:8000)
    GATEPASS_LOG_LEVEL              - Root log level (default INFO)

USAGE:
    python main.py

============================================================================
"""

import os
import logging

import uvicorn
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("GATEPASS_LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("GATEPASS")


def main():
    host = os.getenv("GATEPASS_HOST", "0.0.0.0")
    port = int(os.getenv("GATEPASS_PORT", "8000"))

    logger.info(f"[GATEPASS] Starting server | host={host} | port={port}")

    uvicorn.run("app.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
