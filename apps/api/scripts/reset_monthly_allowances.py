import asyncio
import sys
import os

# Add parent dir to path to find the service modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker
from services.allowance import reset_monthly


async def reset_monthly_allowances_async():
    print("📅 Running monthly allowance reset...")
    async with async_session_maker() as db:
        result = await reset_monthly(db)

    print(f"✅ Period {result['period_key']}: granted={result['granted']} skipped={result['skipped']}")
    if not result["granted"]:
        print("ℹ️ Nothing to grant; this period has already been reset.")


if __name__ == "__main__":
    asyncio.run(reset_monthly_allowances_async())
