#!/usr/bin/env python3
"""
Loan Pricing Engine Entry Point

Starts the FastAPI server with the loan pricing services.
"""

import sys

from loan_pricing.api import run_server
from loan_pricing.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Pricing Engine...")
    print(f"Storage: {config.storage_type}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Pricing Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
