from __future__ import annotations

from datetime import date, datetime
from typing import Any

DEMO_DATASET_ID = "demo_sales"
DEMO_DATE_FIELD = "date"

DEMO_RECORDS: tuple[dict[str, Any], ...] = (
    {"pais": "Brasil", "categoria": "Eletrônicos", "vendas": 1200, "lucro": 250, "unidades": 50, "date": "2024-01-01"},
    {"pais": "Brasil", "categoria": "Móveis", "vendas": 800, "lucro": 150, "unidades": 20, "date": "2024-01-02"},
    {"pais": "EUA", "categoria": "Eletrônicos", "vendas": 2500, "lucro": 500, "unidades": 100, "date": "2024-01-03"},
    {"pais": "EUA", "categoria": "Móveis", "vendas": 1500, "lucro": 300, "unidades": 40, "date": "2024-01-04"},
    {"pais": "Alemanha", "categoria": "Eletrônicos", "vendas": 1800, "lucro": 400, "unidades": 80, "date": "2024-01-05"},
    {"pais": "Alemanha", "categoria": "Móveis", "vendas": 1100, "lucro": 220, "unidades": 35, "date": "2024-01-06"},
)


def records_in_range(
    records: tuple[dict[str, Any], ...] | list[dict[str, Any]],
    *,
    field: str,
    start: date | None,
    end: date | None,
) -> list[dict[str, Any]]:
    """Inclusive on both ends; records without a parsable date are kept."""
    if start is None and end is None:
        return list(records)
    selected: list[dict[str, Any]] = []
    for record in records:
        raw = record.get(field)
        try:
            if isinstance(raw, datetime):
                value = raw.date()
            elif isinstance(raw, date):
                value = raw
            else:
                value = date.fromisoformat(str(raw)[:10])
        except ValueError:
            selected.append(record)
            continue
        if start is not None and value < start:
            continue
        if end is not None and value > end:
            continue
        selected.append(record)
    return selected
