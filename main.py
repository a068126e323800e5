"""
Sample entry point: prints optimized prices for the given item ids.

    python main.py --device-id device-1 --default-price 19.99 sku-1 sku-2

Credentials and endpoints come from SPRESSO_* environment variables (or .env).
"""

import argparse
import asyncio
import sys

from loguru import logger

from spresso import PriceOptimizationClient, PriceRequest, load_settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch Spresso price optimizations")
    parser.add_argument("item_ids", nargs="+", help="Item ids (SKUs) to price")
    parser.add_argument("--device-id", default="sample-device")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--default-price", type=float, default=10.0)
    parser.add_argument("--user-agent", default=None)
    parser.add_argument("--env-file", default=None)
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    settings = load_settings(args.env_file)

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    if not settings.client_id or not settings.client_secret:
        logger.error("SPRESSO_CLIENT_ID and SPRESSO_CLIENT_SECRET must be set")
        return 1

    requests = [
        PriceRequest(
            device_id=args.device_id,
            item_id=item_id,
            default_price=args.default_price,
            user_id=args.user_id,
        )
        for item_id in args.item_ids
    ]

    logger.info(f"Fetching {len(requests)} prices from {settings.base_url}...")
    async with PriceOptimizationClient.from_settings(settings) as client:
        result = await client.get_prices(requests, user_agent=args.user_agent)

    if not result.is_success:
        logger.warning(f"Falling back to default prices: {result.error.value}")

    for price in result.value:
        marker = "*" if price.is_optimized else " "
        print(f"{marker} {price.item_id:<24} {price.price:>10.2f}")

    return 0 if result.is_success else 2


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
