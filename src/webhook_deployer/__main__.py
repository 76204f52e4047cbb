"""Entry point for the webhook deployer."""

import asyncio
import contextlib

from webhook_deployer.logging import setup_logging
from webhook_deployer.server import run_server


def main() -> None:
    """Start the webhook deployer."""
    setup_logging()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_server())


if __name__ == "__main__":
    main()
