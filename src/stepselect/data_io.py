"""
Step-Selection Pipeline — Fix I/O & Validation.

Loads an already-cleaned, projected fix table (one row per GPS fix),
enforces dtypes and checks the per-individual ordering contract the
regulariser relies on.  Deduplication, outlier removal and CRS handling
happen upstream.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

# ── required / optional column sets ─────────────────────────────────────────

FIX_COLUMNS = ["individual_id", "timestamp", "x", "y"]
_FIX_REQUIRED = {"timestamp", "x", "y"}
_DEFAULT_INDIVIDUAL = "individual"


# ── loaders ─────────────────────────────────────────────────────────────────

def read_table(path: str | Path) -> pd.DataFrame:
    """Read parquet or CSV."""
    path = Path(path)
    if path.suffix == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path)


def coerce_fixes(df: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce the fix-table schema on an in-memory frame.

    Adds ``individual_id`` when absent, parses timestamps and sorts by
    ``(individual_id, timestamp)``.  Returns a copy.
    """
    missing = _FIX_REQUIRED - set(df.columns)
    if missing:
        raise ValueError(f"fix table missing columns: {sorted(missing)}")

    df = df.copy()
    if "individual_id" not in df.columns:
        df["individual_id"] = _DEFAULT_INDIVIDUAL
    df["individual_id"] = df["individual_id"].astype(str)
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    df["x"] = pd.to_numeric(df["x"], errors="coerce").astype("float64")
    df["y"] = pd.to_numeric(df["y"], errors="coerce").astype("float64")

    extra = [c for c in df.columns if c not in FIX_COLUMNS]
    df = df[FIX_COLUMNS + extra]
    df = df.sort_values(["individual_id", "timestamp"], kind="mergesort")
    return df.reset_index(drop=True)


def load_fixes(path: str | Path) -> pd.DataFrame:
    """
    Load and type-enforce a fix table.

    Parameters
    ----------
    path : str | Path
        File path (parquet or csv) with ``timestamp, x, y`` and
        optionally ``individual_id``.

    Returns
    -------
    pd.DataFrame
        Validated fixes sorted by individual and time.
    """
    df = coerce_fixes(read_table(path))
    validate_fixes(df)
    logger.info(
        "Loaded fixes: %d rows, %d individuals.",
        len(df), df["individual_id"].nunique(),
    )
    return df


# ── validation ──────────────────────────────────────────────────────────────

def validate_fixes(df: pd.DataFrame) -> None:
    """
    Check the ordering contract of a fix table.

    Raises ``ValueError`` on missing coordinates/timestamps or when
    timestamps are not strictly increasing within an individual
    (duplicates included).
    """
    if df[["timestamp", "x", "y"]].isna().any().any():
        raise ValueError("fix table contains missing timestamps or coordinates")

    ids = df["individual_id"] if "individual_id" in df.columns else None
    if ids is None:
        gaps = df["timestamp"].diff().iloc[1:]
    else:
        gaps = df.groupby(ids, sort=False)["timestamp"].diff().dropna()
    if (gaps <= pd.Timedelta(0)).any():
        raise ValueError(
            "timestamps must be strictly increasing within each individual"
        )


def split_individuals(df: pd.DataFrame) -> Iterator[Tuple[str, pd.DataFrame]]:
    """
    Yield ``(individual_id, fixes)`` pairs in sorted id order.

    A table without ``individual_id`` is one individual, labelled as in
    ``coerce_fixes``.
    """
    if "individual_id" not in df.columns:
        df = df.assign(individual_id=_DEFAULT_INDIVIDUAL)
    for ind, sub in df.groupby("individual_id", sort=True):
        yield str(ind), sub.reset_index(drop=True)
