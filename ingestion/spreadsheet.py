"""
CSV / Excel import into the warehouse.

An uploaded file becomes a plain table in WAREHOUSE_IMPORT_SCHEMA that
pipelines then read through the ``excel`` dialect. The ``DataTable`` record
follows the same pending → processing → completed|failed machine as ETL runs
and is reaped by the same reconciler when an import dies half way.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import re

import pandas as pd

from core.exceptions import ETLException, RunStateConflict, SpreadsheetError
from ingestion.loaders.warehouse_loader import TableWriter, WarehouseLoader, sanitize_name
from ingestion.run_state import RunId, RunStateStore
from ingestion.transformers.rules import WarningLog
from models.base import RunStatus
from schemas.pipeline import CastTarget, ExecutionResult, SinkMode

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 1000
XLSX_MAGIC = b"PK\x03\x04"
SEPARATORS = (",", ";", "\t", "|")

_BOOL = re.compile(r"^(true|false|t|f|1|0)$", re.IGNORECASE)
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_INT = re.compile(r"^-?\d+$")
_FLOAT = re.compile(r"^-?\d+(\.\d+)?$")


def detect_separator(path: Path) -> str:
    """Pick the most frequent of ``, ; TAB |`` on the first line (comma on ties)."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        first_line = f.readline()
    counts = {sep: first_line.count(sep) for sep in SEPARATORS}
    best = max(counts.values())
    if best == 0 or counts[","] == best:
        return ","
    return next(sep for sep in SEPARATORS if counts[sep] == best)


def is_xlsx(path: Path) -> bool:
    with open(path, "rb") as f:
        return f.read(4) == XLSX_MAGIC


def clean_value(value: Any) -> Any:
    """Trimmed text, ISO dates for timestamps, None for blanks and NaN."""
    if value is None:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        if pd.isna(value):
            return None
        return value.date().isoformat() if isinstance(value, datetime) else value.isoformat()
    if isinstance(value, str):
        value = value.strip()
        return value or None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def normalize_headers(headers: List[Any]) -> List[str]:
    """Sanitized, unique column names; repeats get a numeric suffix."""
    names: List[str] = []
    for header in headers:
        text = "" if header is None or (isinstance(header, float) and pd.isna(header)) else str(header).strip()
        if text.startswith("Unnamed: "):
            text = ""
        base = name = sanitize_name(text, fallback="unnamed_column")
        n = 2
        while name in names:
            name = f"{base[:59]}_{n}"
            n += 1
        names.append(name)
    return names


def infer_column_types(records: List[Dict[str, Any]], columns: List[str]) -> Dict[str, CastTarget]:
    """
    Type of each column from a sample of its non-empty values.

    Checked in order: boolean, ISO date, integer, decimal; anything else is
    text. A column with no values in the sample is text.
    """
    types: Dict[str, CastTarget] = {}
    for column in columns:
        values = [str(r[column]) for r in records[:SAMPLE_SIZE] if r.get(column) is not None]
        if not values:
            types[column] = CastTarget.TEXT
        elif all(_BOOL.match(v) for v in values):
            types[column] = CastTarget.BOOLEAN
        elif all(_DATE.match(v) for v in values):
            types[column] = CastTarget.DATE
        elif all(_INT.match(v) for v in values):
            types[column] = CastTarget.INTEGER
        elif all(_FLOAT.match(v) for v in values):
            types[column] = CastTarget.DECIMAL
        else:
            types[column] = CastTarget.TEXT
    return types


def read_spreadsheet(path: Path) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Read the first sheet of an .xlsx file or a delimited text file.

    Returns:
        (normalized header names, non-blank rows keyed by those names)
    """
    if not path.exists():
        raise SpreadsheetError(f"Spreadsheet not found: {path.name}", context={"path": str(path)})

    try:
        if is_xlsx(path):
            df = pd.read_excel(path, sheet_name=0, engine="openpyxl", dtype=object)
        else:
            df = pd.read_csv(
                path,
                sep=detect_separator(path),
                dtype=str,
                keep_default_na=False,
                encoding="utf-8",
                encoding_errors="replace",
            )
    except pd.errors.EmptyDataError:
        return [], []
    except (ValueError, OSError, pd.errors.ParserError) as e:
        raise SpreadsheetError(
            f"Could not read {path.name}: {e}",
            context={"path": str(path)},
            original_exception=e,
        )

    names = normalize_headers(list(df.columns))
    df.columns = names

    rows = []
    for record in df.to_dict(orient="records"):
        row = {key: clean_value(value) for key, value in record.items()}
        if any(value is not None for value in row.values()):
            rows.append(row)

    logger.info(f"Read {len(rows)} rows, {len(names)} columns from {path.name}")
    return names, rows


def import_table_name(data_table_id: RunId) -> str:
    return f"import_{str(data_table_id).replace('-', '_')}"


class SpreadsheetImporter:
    """
    Loads an uploaded spreadsheet into the warehouse for a ``DataTable`` record.

    Args:
        store: Run-state store over ``DataTable``
        loader: Warehouse loader bound to WAREHOUSE_IMPORT_SCHEMA
    """

    def __init__(self, store: RunStateStore, loader: WarehouseLoader):
        self.store = store
        self.loader = loader

    async def process(self, data_table_id: RunId, path: Path, table_name: Optional[str] = None) -> ExecutionResult:
        """
        Import ``path`` for a pending data table.

        Raises:
            RunStateConflict: If the record is missing or not pending
        """
        key = str(data_table_id)
        if not await self.store.transition(data_table_id, RunStatus.PROCESSING):
            raise RunStateConflict(f"Import {key} is not pending", context={"data_table_id": key})

        writer: Optional[TableWriter] = None
        try:
            # pandas parsing is blocking
            columns, rows = await asyncio.to_thread(read_spreadsheet, Path(path))
            writer = self.loader.writer(
                table_name or import_table_name(data_table_id),
                mode=SinkMode.REPLACE,
                run_id=key,
                columns=columns,
                column_types=infer_column_types(rows, columns),
                warnings=WarningLog(),
            )

            batch_size = self.loader.batch_size
            for start in range(0, len(rows), batch_size):
                await writer.write(rows[start:start + batch_size])
                await self.store.record_progress(data_table_id, writer.rows_written)
            rows_written = await writer.finish()

        except ETLException as e:
            return await self._fail(data_table_id, e, writer)

        except Exception as e:
            logger.exception(f"Import {key}: unexpected error")
            return await self._fail(data_table_id, e, writer)

        await self.store.transition(
            data_table_id,
            RunStatus.COMPLETED,
            rows_written=rows_written,
            physical_schema=self.loader.schema,
            physical_table=writer.table_name,
        )
        logger.info(f"Import {key} completed: {rows_written} rows into {self.loader.schema}.{writer.table_name}")
        return ExecutionResult.success(
            rows_written=rows_written,
            table_name=writer.table_name,
            run_id=key,
            warnings=writer.warnings.count,
        )

    async def _fail(self, data_table_id: RunId, error: Exception, writer: Optional[TableWriter]) -> ExecutionResult:
        rows_written = writer.rows_written if writer is not None else 0
        if writer is not None:
            await writer.abort()
        result = ExecutionResult.failure(error, run_id=str(data_table_id), rows_written=rows_written)
        logger.error(f"Import {data_table_id} failed: {result.error_kind}: {result.message}")
        await self.store.transition(
            data_table_id,
            RunStatus.FAILED,
            error_message=result.message,
            rows_written=rows_written,
        )
        return result
