"""Run the recurring billing job manually.

Usage:
    cd backend
    python -m scripts.run_billing_cycle [YYYY-MM-DD]
"""

import asyncio
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from academy_billing.core.database import async_session_maker
from academy_billing.core.logging import setup_logging
from academy_billing.modules.billing.tasks import run_billing_cycle
from academy_billing.modules.payment_gateway.client import get_portone_client


async def main(run_date: date):
    """Run one billing cycle and print the summary."""
    print("\n" + "=" * 60)
    print(f"Running Billing Cycle for {run_date.isoformat()}")
    print("=" * 60)

    async with async_session_maker() as session:
        summary = await run_billing_cycle(session, get_portone_client(), run_date)

    print(f"\nResults:")
    print(f"  Subscriptions due: {summary['subscriptions_found']}")
    print(f"  Successful payments: {summary['successful_payments']}")
    print(f"  Failed payments: {summary['failed_payments']}")
    for error in summary["errors"]:
        print(f"  - {error}")


if __name__ == "__main__":
    setup_logging(level="INFO", json_format=False)
    run_date = date.fromisoformat(sys.argv[1]) if len(sys.argv) > 1 else date.today()
    asyncio.run(main(run_date))
