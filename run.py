#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with the loan ledger and its background tasks.
Settings come from LEDGER_* environment variables or a .env file.
"""

import sys

from loan_ledger.api import run_server
from loan_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Ledger...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print(f"Overdue sweep every {int(config.overdue_sweep_interval_seconds)}s")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Loan Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
