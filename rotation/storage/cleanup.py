# -*- coding: utf-8 -*-
"""
Database cleanup and maintenance tasks.
Deletes market snapshots and cached price history past the retention window.
Transitions and alerts are an append-only log and are never deleted.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from loguru import logger
from sqlalchemy import delete

from rotation.storage.db import Database
from rotation.storage.models import MarketMetrics, PriceHistory


def cleanup_old_rows(database: Database, retention_days: int = 90,
                     now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Delete rows older than `retention_days`.

    Returns:
        Dict with cleanup stats: {"market_metrics": 12, "price_history": 30}
    """
    now = now or datetime.now(timezone.utc)
    cutoff_ms = int((now - timedelta(days=retention_days)).timestamp() * 1000)

    logger.info(f"Starting database cleanup: retention={retention_days}d")

    stats = {}
    with database.SessionLocal() as session:
        for name, model in (("market_metrics", MarketMetrics), ("price_history", PriceHistory)):
            result = session.execute(delete(model).where(model.timestamp < cutoff_ms))
            stats[name] = result.rowcount or 0
        session.commit()

    logger.info(f"Database cleanup complete: {stats}")
    return stats
