"""Entry point for ``python -m ledgerbot``."""

import asyncio

from ledgerbot.bot import run_bot
from ledgerbot.config import Settings


def main() -> None:
    """Launch the LedgerBot webhook server."""
    try:
        asyncio.run(run_bot(Settings()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
