#!/usr/bin/env python3
"""
Tax Collection Engine Entry Point

Starts the FastAPI server with settings from the environment (TAXCOL_*).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import uvicorn

from tax_collection.config import get_config
from tax_collection.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Tax Collection Arrears Engine...")
    print(f"Civil calendar: {config.timezone}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            "tax_collection.api:app",
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\nShutting down Tax Collection Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
