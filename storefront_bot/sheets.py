from __future__ import annotations

import io
import re
from typing import Any, Dict, Iterable, List

import pandas as pd
from docx import Document as Docx

from .errors import ValidationError
from .models import DeliveryRecord, StockItem

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_COLUMN_ALIASES = {
    "id": {"id", "código", "codigo", "code"},
    "name": {"name", "nome", "produto", "product"},
    "emoji": {"emoji"},
    "quantity": {"quantity", "qty", "quantidade", "estoque", "stock"},
    "price": {"price", "preço", "preco"},
    "max": {"max", "máximo", "maximo"},
}

STOCK_COLUMNS = ["id", "name", "emoji", "quantity", "price", "max"]
DELIVERY_COLUMNS = [
    "id", "timestamp", "mention", "itemId", "itemName", "quantity", "photoUrl", "messageSent", "messageStatus",
]


# ---------- Import ----------
def _cell(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if hasattr(value, "item"):  # numpy scalar
        return _cell(value.item())
    return value


def _parse_docx_to_df(buf: io.BytesIO) -> pd.DataFrame:
    d = Docx(buf)
    rows: List[List[str]] = []
    for t in d.tables:
        for r in t.rows[1:] if len(t.rows) > 1 else t.rows:
            rows.append([c.text.strip() for c in r.cells])
    for p in d.paragraphs:
        m = re.match(r"(.+?)\s*[-,:–]\s*(\d+)$", p.text.strip())
        if m:
            rows.append([m.group(1), m.group(2)])
    data = []
    for r in rows:
        if not r or not r[0]:
            continue
        row: Dict[str, Any] = {"name": r[0], "quantity": r[1] if len(r) > 1 else "0"}
        if len(r) > 2 and r[2]:
            row["price"] = r[2]
        data.append(row)
    return pd.DataFrame(data)


def read_stock_rows(filename: str, payload: bytes) -> List[Dict[str, Any]]:
    buf = io.BytesIO(payload)
    lower = (filename or "").lower()
    try:
        if lower.endswith((".xlsx", ".xls")):
            df = pd.read_excel(buf)
        elif lower.endswith(".csv"):
            df = pd.read_csv(buf)
        elif lower.endswith(".docx"):
            df = _parse_docx_to_df(buf)
        else:
            raise ValidationError("Unsupported format. Use xlsx/xls/csv/docx.")
    except ValidationError:
        raise
    except Exception as exc:
        raise ValidationError(f"Read error: {exc}") from exc

    columns: Dict[str, Any] = {}
    for col in df.columns:
        key = str(col).strip().lower()
        for field, aliases in _COLUMN_ALIASES.items():
            if key in aliases and field not in columns:
                columns[field] = col
    if "id" not in columns and "name" not in columns:
        raise ValidationError("Missing required column: id or name.")

    rows: List[Dict[str, Any]] = []
    for _, row in df.iterrows():
        record: Dict[str, Any] = {}
        for field, col in columns.items():
            value = row[col]
            if pd.isna(value):
                continue
            record[field] = _cell(value)
        if record:
            rows.append(record)
    return rows


# ---------- Export ----------
def _workbook(rows: List[Dict[str, Any]], columns: List[str], sheet_name: str) -> bytes:
    df = pd.DataFrame(rows, columns=columns)
    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)
    return bio.getvalue()


def stock_workbook(items: Iterable[StockItem]) -> bytes:
    return _workbook([item.to_dict() for item in items], STOCK_COLUMNS, "Stock")


def deliveries_workbook(records: Iterable[DeliveryRecord]) -> bytes:
    return _workbook([record.to_dict() for record in records], DELIVERY_COLUMNS, "Deliveries")


def attachment_headers(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}
