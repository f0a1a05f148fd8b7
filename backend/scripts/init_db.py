"""
Create the allocation store schema
Run from: backend directory
Usage: python scripts/init_db.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rebalancer.core.config import get_settings
from rebalancer.database.session import check_db_connection, init_db

settings = get_settings()


if __name__ == "__main__":
    if not check_db_connection():
        print(f"❌ Cannot connect to {settings.DATABASE_URL}")
        sys.exit(1)
    init_db()
    print("✅ Tables created: locations, skus, allocations, stock_alerts, transfer_orders, "
          "sales_velocity, stock_batches, audit_log")
