#!/usr/bin/env python
"""
Quick start script for the Orchestration Core service.

This script performs pre-flight checks and starts the service.
"""

import sys
from pathlib import Path


def main() -> None:
    """Main entry point."""
    print("=" * 50)
    print("Orchestration Core Quick Start")
    print("=" * 50)
    print()

    script_dir = Path(__file__).parent
    project_root = script_dir.parent

    env_file = project_root / ".env"
    if not env_file.exists():
        print("No .env file found; using defaults and environment variables.")
        print("Common settings:")
        print("  - HOST, PORT, LOG_LEVEL")
        print("  - QUEUE_MAX_DEPTH, MAX_CONCURRENT_WORK")
        print("  - CIRCUIT_BREAKER_FAILURE_THRESHOLD, ROLLBACK_TIMEOUT_SECONDS")
        print()

    print("Checking dependencies...")
    try:
        import anyio  # noqa: F401
        import fastapi  # noqa: F401
        import httpx  # noqa: F401
        import pydantic  # noqa: F401
        import yaml  # noqa: F401
        print("✓ Core dependencies installed")
    except ImportError as e:
        print(f"❌ Missing dependency: {e}")
        print("\nInstall dependencies with:")
        print("  pip install -e .")
        sys.exit(1)

    version_info = sys.version_info
    if version_info < (3, 10):
        print(f"⚠️  Python {version_info.major}.{version_info.minor} detected.")
        print("   Python 3.10+ is required.")
        sys.exit(1)
    print(f"✓ Python {version_info.major}.{version_info.minor}")

    sys.path.insert(0, str(project_root))
    from orchestrator.service.config import config

    print("\n" + "=" * 50)
    print("Starting Orchestration Core Service")
    print("=" * 50)
    print()
    print(f"Service will be available at: http://{config.host}:{config.port}")
    print(f"API documentation at: http://{config.host}:{config.port}/docs")
    print()
    print("Press Ctrl+C to stop the service")
    print()

    try:
        from orchestrator.service.main import main as service_main

        service_main()

    except KeyboardInterrupt:
        print("\n\nService stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
