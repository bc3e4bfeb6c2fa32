#!/usr/bin/env python3
"""
Balance Ledger Entry Point

Starts the FastAPI server with host, port and storage taken from LEDGER_*
environment variables (or a .env file).
"""

import sys

from balance_ledger.api import run_server
from balance_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Balance Ledger...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Balance Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
