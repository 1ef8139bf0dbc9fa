# scripts/cleanup_webhook_events.py

import os
import sys
import argparse

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from core.database import new_session
from services.maintenance import cleanup_old_webhook_events


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete old webhook ledger rows")
    parser.add_argument("--days", type=int, default=settings.WEBHOOK_EVENT_RETENTION_DAYS)
    args = parser.parse_args()

    deleted = cleanup_old_webhook_events(new_session, args.days)
    print(f"🧹 Deleted {deleted} webhook events older than {args.days} days")
