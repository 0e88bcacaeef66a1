#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with the loan servicing API.
"""

import sys

import uvicorn

from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("🏦 Starting Loan Servicing API...")
    print("💰 All schedule and interest calculations use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            "loan_servicing.api:app",
            host=config.api_host,
            port=config.api_port,
            workers=config.api_workers
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Loan Servicing API...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
