"""
Create the billing tables (subscriptions, webhook_events, billing_events, ...).

Usage:
    python -m scripts.init_db
    python -m scripts.init_db --database-url sqlite:///billing.db
"""

import argparse
import logging
import os
import sys

from tradersutopia.database.session import create_tables


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create missing billing tables")
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger(__name__)
    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url

    try:
        tables = create_tables()
    except ValueError as e:
        logger.error(str(e))
        return 1

    logger.info(f"Database initialization complete: {', '.join(tables)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
