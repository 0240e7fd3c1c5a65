# cci/db_utils.py
from sqlalchemy.orm import Session

from . import models

REVENUE_WINDOW = 90


def upsert_revenue_entry(session: Session, user_id: str, entry_date, amount: float, views=None) -> models.RevenueEntry:
    """
    Insert or update the revenue sample for (user_id, entry_date). Returns the instance.
    Re-uploading a day replaces its figures instead of duplicating the day.
    """
    existing = (
        session.query(models.RevenueEntry)
        .filter(models.RevenueEntry.user_id == user_id, models.RevenueEntry.entry_date == entry_date)
        .one_or_none()
    )
    if existing:
        existing.amount = amount
        existing.views = views
        session.add(existing)
        session.flush()
        return existing
    entry = models.RevenueEntry(user_id=user_id, entry_date=entry_date, amount=amount, views=views)
    session.add(entry)
    session.flush()
    return entry


def trim_revenue_window(session: Session, user_id: str, keep: int = REVENUE_WINDOW) -> int:
    """Drop all but the newest `keep` samples for a user. Returns how many were removed."""
    stale = (
        session.query(models.RevenueEntry)
        .filter(models.RevenueEntry.user_id == user_id)
        .order_by(models.RevenueEntry.entry_date.desc())
        .offset(keep)
        .all()
    )
    for entry in stale:
        session.delete(entry)
    session.flush()
    return len(stale)


def refresh_avg_daily_revenue(session: Session, account: models.CreatorAccount) -> float:
    """Recompute the account's long-window daily average and monthly earnings from stored samples."""
    amounts = [
        a for (a,) in session.query(models.RevenueEntry.amount).filter(models.RevenueEntry.user_id == account.id).all()
    ]
    avg = sum(amounts) / len(amounts) if amounts else 0.0
    account.avg_daily_revenue_90d = avg
    account.monthly_earnings = avg * 30
    session.add(account)
    session.flush()
    return avg
