import asyncio
import argparse
import logging
import os
import sys

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.core.config import settings
from app.core.db import init_models
from app.core.logging import setup_logging
from app.modules.consent.sweeper import sweep_expired, run_consent_sweeper

log = logging.getLogger("consent.sweeper")

async def main():
    """
    Run the expiration sweeper outside the API process, either once (cron) or as a loop.
    """
    parser = argparse.ArgumentParser(description="Expire consent requests and access grants past their expiry")
    parser.add_argument("--loop", action="store_true", help="keep sweeping every SWEEPER_INTERVAL_SECONDS")
    parser.add_argument("--interval", type=float, default=None)
    args = parser.parse_args()

    setup_logging()
    await init_models()
    if args.loop:
        await run_consent_sweeper(args.interval or settings.SWEEPER_INTERVAL_SECONDS)
        return
    result = await sweep_expired()
    print(f"requests_expired={result.requests_expired} grants_expired={result.grants_expired} skipped={result.skipped}")

if __name__ == "__main__":
    asyncio.run(main())
