#!/usr/bin/env python3
"""
Check Treasury Entry Point

Starts the FastAPI server with the check treasury engine.
"""

import sys

from check_treasury.api import run_server
from check_treasury.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Check Treasury API...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Check Treasury API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
