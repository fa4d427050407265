"""
Runtime configuration for the aggregation pipeline

All settings come from environment variables (optionally via a .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()

# PostgreSQL in production; tests point this at in-memory SQLite
DATABASE_URL = os.getenv("DATABASE_URL")

# Rows fetched per streaming query
AGGREGATE_CHUNK_SIZE = int(os.getenv("AGGREGATE_CHUNK_SIZE", "5000"))

# Rows per INSERT when persisting derived tables
AGGREGATE_INSERT_BATCH_SIZE = int(os.getenv("AGGREGATE_INSERT_BATCH_SIZE", "500"))

# Raw positions older than this are purged by the cleanup job (5 days)
POSITION_RETENTION_HOURS = int(os.getenv("POSITION_RETENTION_HOURS", "120"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_cron_secret():
    """Bearer token expected by the cron endpoints (read per request)"""
    return os.getenv("CRON_SECRET") or None
