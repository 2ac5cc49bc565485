#!/usr/bin/env python3
"""
adsync API Startup Script

Starts the FastAPI server that exposes the Meta sync trigger.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the adsync API server."""
    print("Starting adsync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   Sync route:  POST http://localhost:8000/meta/sync (X-Admin-Key header)")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("   ADMIN_SECRET_KEY=your-admin-secret")
        print("")

    try:
        uvicorn.run(
            "adsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adsync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down adsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
