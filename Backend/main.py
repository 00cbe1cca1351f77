#!/usr/bin/env python
"""
Booking Identity - Backend Application Entry Point

Usage:
    # Development mode (with hot reload when APP_DEBUG=true):
    python main.py

    # Or use uvicorn directly:
    uvicorn identity_core.main:app --host 0.0.0.0 --port 8000 --reload

Environment Variables:
    - APP_DEBUG=true: Enable debug mode and hot reload
    - APP_ENV=development: Development environment
"""

import sys
from pathlib import Path

# Add Backend directory to Python path
backend_dir = Path(__file__).parent.resolve()
sys.path.insert(0, str(backend_dir))

import uvicorn

from identity_core.core.config import settings


def main() -> None:
    """Run the FastAPI application."""

    print("=" * 60)
    print("Starting Booking Identity Backend")
    print("=" * 60)
    print(f"   Environment: {settings.app.app_env}")
    print(f"   Debug Mode: {settings.app.app_debug}")
    print(f"   Host: {settings.app.api_host}:{settings.app.api_port}")
    print(f"   Workers: {1 if settings.app.app_debug else settings.app.api_workers}")
    print("=" * 60)
    print()

    uvicorn.run(
        "identity_core.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        reload=settings.app.app_debug,
        workers=1 if settings.app.app_debug else settings.app.api_workers,
        log_level=settings.log.level.lower(),
        access_log=settings.log.requests,
        reload_dirs=[str(backend_dir / "identity_core")] if settings.app.app_debug else None,
    )


if __name__ == "__main__":
    main()
