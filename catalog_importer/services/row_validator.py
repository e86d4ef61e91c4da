"""Business-rule validation applied to each CSV row before any write."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_importer.core.enums import ErrorType, Severity
from catalog_importer.db.models.product import Product
from catalog_importer.services.csv_stream import REQUIRED_COLUMNS
from catalog_importer.utils.text import parse_int, parse_number, round_half_up, slugify

NUMERIC_COLUMNS = [
    "cost_price",
    "regular_price",
    "sale_price",
    "discount_percentage",
    "minimum_price",
    "wholesale_minimum_qty",
    "wholesale_discount_percentage",
]
ID_COLUMNS = ["supplier_id", "catalog_id", "category_id"]

# Listed discount may differ from the computed one by this many points
DISCOUNT_TOLERANCE = 1


@dataclass(frozen=True)
class RowIssue:
    message: str
    severity: Severity = Severity.ERROR
    field: str | None = None
    type: ErrorType = ErrorType.VALIDATION


@dataclass
class ValidationResult:
    issues: list[RowIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """Warnings never block a row; any ERROR does."""
        return not any(issue.severity == Severity.ERROR for issue in self.issues)

    @property
    def errors(self) -> list[RowIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.ERROR]

    def add(self, message: str, *, field: str | None = None, severity: Severity = Severity.ERROR) -> None:
        self.issues.append(RowIssue(message=message, field=field, severity=severity))


def _present(row: dict[str, str], column: str) -> bool:
    return bool((row.get(column) or "").strip())


class RowValidator:
    """Validate rows for one batch.

    ``sku_exists`` answers whether a product already owns a slug; by default it
    queries the products table through ``session``.
    """

    def __init__(
        self,
        session: Session,
        default_catalog_id: int | None = None,
        sku_exists: Callable[[str], bool] | None = None,
    ):
        self.session = session
        self.default_catalog_id = default_catalog_id
        self._sku_exists = sku_exists or self._slug_taken

    def _slug_taken(self, slug: str) -> bool:
        return self.session.scalar(select(Product.id).where(Product.slug == slug).limit(1)) is not None

    def validate(self, row: dict[str, str]) -> ValidationResult:
        result = ValidationResult()
        self._check_required(row, result)
        self._check_references(row, result)
        numbers = self._check_numeric(row, result)
        self._check_pricing(numbers, result)
        self._check_sku(row, result)
        return result

    def _check_required(self, row: dict[str, str], result: ValidationResult) -> None:
        for column in REQUIRED_COLUMNS:
            if not _present(row, column):
                result.add(f"{column} is required", field=column)

    def _check_references(self, row: dict[str, str], result: ValidationResult) -> None:
        if not (_present(row, "supplier_id") or _present(row, "supplier_name")):
            result.add("Either supplier_id or supplier_name must be provided")
        if not (
            _present(row, "catalog_id")
            or _present(row, "catalog_name")
            or self.default_catalog_id
        ):
            result.add("Either catalog_id or catalog_name must be provided")
        if not (_present(row, "category_id") or _present(row, "category_name")):
            result.add("Either category_id or category_name must be provided")
        for column in ID_COLUMNS:
            if _present(row, column) and parse_int(row[column]) is None:
                result.add(f"{column} must be an integer", field=column)

    def _check_numeric(self, row: dict[str, str], result: ValidationResult) -> dict[str, float]:
        numbers: dict[str, float] = {}
        for column in NUMERIC_COLUMNS:
            if not _present(row, column):
                continue
            value = parse_number(row[column])
            if value is None:
                result.add(f"{column} must be a number", field=column)
            else:
                numbers[column] = value
        return numbers

    def _check_pricing(self, numbers: dict[str, float], result: ValidationResult) -> None:
        regular = numbers.get("regular_price")
        sale = numbers.get("sale_price")
        minimum = numbers.get("minimum_price")
        cost = numbers.get("cost_price")
        listed_discount = numbers.get("discount_percentage")

        if sale is None:
            return
        if regular is not None and sale > regular:
            result.add("Sale price cannot be greater than regular price", field="sale_price")
        if minimum is not None and sale < minimum:
            result.add("Sale price cannot be less than minimum price", field="sale_price")
        if cost is not None and sale < cost:
            result.add(
                "Sale price should be greater than cost price",
                field="sale_price",
                severity=Severity.WARNING,
            )
        if regular and listed_discount is not None:
            calculated = round_half_up((regular - sale) / regular * 100)
            if abs(calculated - listed_discount) > DISCOUNT_TOLERANCE:
                result.add(
                    f"Listed discount ({listed_discount:g}%) doesn't match "
                    f"calculated discount ({calculated}%)",
                    field="discount_percentage",
                    severity=Severity.WARNING,
                )

    def _check_sku(self, row: dict[str, str], result: ValidationResult) -> None:
        if not _present(row, "product_sku"):
            return
        sku = row["product_sku"].strip()
        if self._sku_exists(slugify(sku)):
            result.add(f"Product with SKU '{sku}' already exists", field="product_sku")
