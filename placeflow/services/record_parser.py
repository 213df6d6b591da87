"""
Placeflow - Record Parser

Turns an uploaded CSV into PreviewRecords.

The header check is all-or-nothing: a file missing any required column is
rejected as a whole with StructuralError and nothing downstream runs.
Rows whose cells are all blank are dropped silently.
"""

from __future__ import annotations

import io
import logging
from typing import List, Sequence

import pandas as pd

from ..core.errors import StructuralError
from ..core.models import PreviewRecord, RecordStatus

logger = logging.getLogger(__name__)

REQUIRED_HEADERS: Sequence[str] = ("Title", "Note", "URL", "Comment")


def missing_headers(columns: Sequence[str]) -> List[str]:
    present = {str(c).strip() for c in columns}
    return [h for h in REQUIRED_HEADERS if h not in present]


def parse(content: str | bytes) -> List[PreviewRecord]:
    """
    Parse CSV content into pending preview records, in file order.

    Raises:
        StructuralError: empty file, unreadable CSV, missing required
            headers, or a header row with no data rows
    """
    raw = content.encode("utf-8") if isinstance(content, str) else content
    if not raw.strip():
        raise StructuralError("File is empty")

    try:
        df = pd.read_csv(
            io.BytesIO(raw),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to parse CSV: {e}")
        raise StructuralError(f"Invalid CSV format: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    missing = missing_headers(list(df.columns))
    if missing:
        raise StructuralError(
            f"Missing required headers: {', '.join(missing)}",
            missing_headers=missing,
        )

    df = df.fillna("")
    records: List[PreviewRecord] = []
    for _, row in df.iterrows():
        values = {str(k): str(v) for k, v in row.to_dict().items()}
        if not any(v.strip() for v in values.values()):
            continue
        records.append(PreviewRecord(original=values, status=RecordStatus.PENDING))

    if not records:
        raise StructuralError("File has a header row but no data rows")

    logger.info(f"Parsed {len(records)} record(s)", extra={"count": len(records)})
    return records
