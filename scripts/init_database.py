"""
One-time database initialization script
Creates every table used by the collector, the aggregation pipeline and the API

Usage:
  python -m scripts.init_database
"""

import logging

from src.config import LOG_FORMAT, LOG_LEVEL
from src.database import init_db
from src.models import Base


def main():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    print("=" * 70)
    print("Porto Transit Analytics - Database Initialization")
    print("=" * 70)

    init_db()

    print("✓ Database tables created:")
    for name in sorted(Base.metadata.tables):
        print(f"  - {name}")


if __name__ == "__main__":
    main()
