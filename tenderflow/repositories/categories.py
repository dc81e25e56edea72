from __future__ import annotations

import logging
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.errors import ValidationFailed
from tenderflow.models import Category
from tenderflow.repositories.base import SqlRepository

logger = logging.getLogger(__name__)

# Form labels and loose variants mapped onto stored category names.
CATEGORY_SYNONYMS: dict[str, str] = {
    "Construction & Infrastructure": "Construction & Infrastructure",
    "Information Technology": "IT & Software Services",
    "Healthcare & Medical": "Pharmaceuticals",
    "Transportation & Logistics": "Transportation & Logistics",
    "Professional Services": "Professional Services",
    "Supplies & Equipment": "Office Supplies & Equipment",
    "Energy & Utilities": "Chemicals",
    "Education & Training": "Consulting",
    "Other": "Other",
    "Automotive": "Transportation & Logistics",
    "Machinery": "Equipment",
    "Medical": "Pharmaceuticals",
    "IT": "IT Services",
    "Technology": "IT Services",
    "Food": "Food & Beverages",
}


DEFAULT_CATEGORIES: tuple[str, ...] = (
    "Chemicals",
    "Construction",
    "Construction & Infrastructure",
    "Consulting",
    "Electronic",
    "Equipment",
    "Food & Beverages",
    "Furniture",
    "IT & Software Services",
    "IT Services",
    "Maintenance",
    "Office Supplies & Equipment",
    "Other",
    "Pharmaceuticals",
    "Professional Services",
    "Supplies",
    "Textiles",
    "Transportation & Logistics",
)


def normalize_category_name(label: str) -> str:
    name = label.strip()
    return CATEGORY_SYNONYMS.get(name, name)


class CategoriesRepository(SqlRepository):
    def __init__(self, *, manager: ConnectionManager, table_name: str = "categories") -> None:
        super().__init__(manager=manager, table_name=table_name)

    def create(self, name: str, description: str | None = None, *, tx: Transaction | None = None) -> Category:
        clean = name.strip()
        if not clean:
            raise ValidationFailed("category name is required")
        sql = f"""
            INSERT INTO {self._table_name} (name, description, is_active)
            VALUES (%s, %s, %s)
            RETURNING *
        """

        def _op(t: Transaction) -> Category:
            row = t.fetchone(sql, (clean, description, True))
            if row is None:
                raise RuntimeError("category insert returned no row")
            return Category.from_row(row)

        return self._in_tx(_op, tx)

    def find_all_active(self, *, tx: Transaction | None = None) -> list[Category]:
        sql = f"SELECT * FROM {self._table_name} WHERE is_active = %s ORDER BY name"
        return self._in_tx(lambda t: [Category.from_row(r) for r in t.execute(sql, (True,))], tx)

    def find_by_id(self, category_id: int, *, tx: Transaction | None = None) -> Category | None:
        sql = f"SELECT * FROM {self._table_name} WHERE id = %s"

        def _op(t: Transaction) -> Category | None:
            row = t.fetchone(sql, (category_id,))
            return Category.from_row(row) if row is not None else None

        return self._in_tx(_op, tx)

    def resolve_category_id(self, label: Any, *, tx: Transaction | None = None) -> int | None:
        """Map a free-form label to a category id; unknown labels resolve to None."""
        if not isinstance(label, str) or not label.strip():
            return None
        name = normalize_category_name(label)
        sql = f"SELECT id FROM {self._table_name} WHERE LOWER(name) = %s ORDER BY id LIMIT 1"

        def _op(t: Transaction) -> int | None:
            row = t.fetchone(sql, (name.lower(),))
            return int(row["id"]) if row is not None else None

        category_id = self._in_tx(_op, tx)
        if category_id is None:
            logger.info("category label not resolved label=%s normalized=%s", label, name)
        return category_id

    def ensure_defaults(self, names: tuple[str, ...] = DEFAULT_CATEGORIES) -> dict[str, int]:
        """Insert missing categories and reactivate inactive ones, in one transaction."""
        select_sql = f"SELECT id, is_active FROM {self._table_name} WHERE name = %s"
        activate_sql = f"UPDATE {self._table_name} SET is_active = %s WHERE id = %s"

        def _op(t: Transaction) -> dict[str, int]:
            counts = {"inserted": 0, "activated": 0, "existing": 0}
            for name in names:
                row = t.fetchone(select_sql, (name,))
                if row is None:
                    self.create(name, tx=t)
                    counts["inserted"] += 1
                elif not row.get("is_active"):
                    t.execute(activate_sql, (True, row["id"]))
                    counts["activated"] += 1
                else:
                    counts["existing"] += 1
            return counts

        counts = self._in_tx(_op, None)
        logger.info("categories ensured inserted=%s activated=%s", counts["inserted"], counts["activated"])
        return counts
