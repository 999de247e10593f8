"""Entry point for the Aether updater service."""

import asyncio

from aether_updater.logging import setup_logging
from aether_updater.server import run_server


def main() -> None:
    """Configure logging and start the updater server."""
    setup_logging()
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
