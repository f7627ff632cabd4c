"""Run the daily billing sweep manually.

Usage:
    python -m scripts.run_billing_tasks
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from tenant_billing.core.database import async_session_maker, engine
from tenant_billing.core.logging import setup_logging
from tenant_billing.modules.billing.scheduler import DailyScheduler


async def main():
    """Run the sweep and print its counters."""
    print("\n" + "=" * 60)
    print("Running Daily Billing Sweep")
    print("=" * 60)

    try:
        summary = await DailyScheduler(session_factory=async_session_maker).run()
    finally:
        await engine.dispose()

    print(f"\nResults:")
    for key, value in summary.to_dict().items():
        print(f"  {key.replace('_', ' ').capitalize()}: {value}")


if __name__ == "__main__":
    setup_logging(level="INFO", json_format=False)
    asyncio.run(main())
