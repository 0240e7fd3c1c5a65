# cci/routes/upload.py
import io
import logging

import pandas as pd
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..db import get_db
from ..db_utils import refresh_avg_daily_revenue, trim_revenue_window, upsert_revenue_entry

logger = logging.getLogger(__name__)

router = APIRouter()

REQUIRED_COLUMNS = ["user_id", "date", "amount"]

INSTRUCTION_SNIPPET = (
    "Revenue history schema required: user_id | date | amount | views (optional). "
    "One row per creator per day; amounts in the policy currency."
)


def _read_sheet(filename: str, content: bytes) -> pd.DataFrame:
    if (filename or "").lower().endswith(".csv"):
        return pd.read_csv(io.BytesIO(content))
    return pd.read_excel(io.BytesIO(content), engine="openpyxl")


@router.post("/revenue/upload")
async def upload_revenue(history: UploadFile = File(...), db: Session = Depends(get_db)):
    """
    Ingest a revenue-history sheet (Excel or CSV), keep the newest 90 days per
    creator and refresh their long-window averages.
    """
    content = await history.read()
    try:
        df = _read_sheet(history.filename, content)
    except (ValueError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Could not read revenue file: {e}")

    df.columns = [str(c).strip().lower() for c in df.columns]
    missing_cols = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing_cols:
        raise HTTPException(
            status_code=400,
            detail={"error": "schema_missing", "missing_columns": missing_cols, "instructions": INSTRUCTION_SNIPPET},
        )

    df["date"] = pd.to_datetime(df["date"], errors="coerce").dt.date
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
    bad = df[df["date"].isna() | df["amount"].isna() | df["user_id"].isna()]
    if not bad.empty:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_rows", "rows": [int(i) + 2 for i in bad.index], "instructions": INSTRUCTION_SNIPPET},
        )

    users = {str(u) for u in df["user_id"].unique()}
    unknown = sorted(u for u in users if db.get(models.CreatorAccount, u) is None)
    if unknown:
        raise HTTPException(status_code=404, detail={"error": "unknown_users", "user_ids": unknown})

    inserted = 0
    try:
        for _, row in df.iterrows():
            views = row.get("views")
            upsert_revenue_entry(
                db,
                user_id=str(row["user_id"]),
                entry_date=row["date"],
                amount=float(row["amount"]),
                views=None if views is None or pd.isna(views) else int(views),
            )
            inserted += 1
        for user_id in users:
            trim_revenue_window(db, user_id)
            refresh_avg_daily_revenue(db, db.get(models.CreatorAccount, user_id))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[Upload] Revenue ingest failed: %s", e)
        raise HTTPException(status_code=500, detail="Could not store revenue history")
    logger.info("[Upload] Stored %d revenue rows for %d creators", inserted, len(users))

    return {
        "message": "Revenue history uploaded.",
        "inserted": inserted,
        "creators": sorted(users),
    }
