"""Order Service のデータベース管理 CLI

Usage:
    python -m app.manage setup-db
    python -m app.manage drop-db
    python -m app.manage add-product --id p1 --name Widget --stock 10 --price 9.99
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine

from .schema import drop_db, products, setup_db


async def add_product(engine, product_id: str, name: str, stock: int, price: Decimal) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            insert(products).values(
                id=product_id,
                name=name,
                stock=stock,
                price=price,
                updated_at=datetime.now(timezone.utc),
            )
        )


async def run(args) -> None:
    engine = create_async_engine(os.environ["DATABASE_URL"])
    try:
        if args.command == "setup-db":
            print("Creating order service schema...")
            await setup_db(engine)
        elif args.command == "drop-db":
            print("Dropping order service schema...")
            await drop_db(engine)
        elif args.command == "add-product":
            await add_product(engine, args.id, args.name, args.stock, args.price)
            print(f"  product {args.id} added (stock={args.stock}).")
    finally:
        await engine.dispose()
    print("Done.")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Order service database management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup-db", help="Create all database tables")
    subparsers.add_parser("drop-db", help="Drop all database tables")

    product_parser = subparsers.add_parser("add-product", help="Register a product")
    product_parser.add_argument("--id", required=True)
    product_parser.add_argument("--name", required=True)
    product_parser.add_argument("--stock", type=int, default=0)
    product_parser.add_argument("--price", type=Decimal, default=Decimal("0"))

    args = parser.parse_args(argv)
    if args.command == "add-product" and args.stock < 0:
        parser.error("--stock must be >= 0")

    asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
