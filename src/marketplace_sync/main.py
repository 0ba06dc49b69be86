"""Sync service entry point."""

from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file before settings are read
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(env_path)

import uvicorn  # noqa: E402

from marketplace_sync.config.settings import settings  # noqa: E402


def main():
    """Run the sync service."""
    uvicorn.run(
        "marketplace_sync.server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
