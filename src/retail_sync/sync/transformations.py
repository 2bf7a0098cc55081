"""Transformation function library -- a closed, named registry.

Mappings reference transformations by name only, so the validator can
check every name and argument count at save time. Functions receive the
current field value, their declared arguments, and a TransformContext.

Built-ins:
- String: uppercase, lowercase, trim, replace(from, to), split(delimiter, index),
  concat(separator, *paths), to_string([decimals])
- Dates: date_format(from, to) over ISO8601 | YYYY-MM-DD | MM/DD/YYYY | DD-MM-YYYY
- Lookups: lookup_customer (by email), lookup_product (by SKU)
- Arrays: map_line_items([sku_field, qty_field, price_field]) -> QuickBooks Line[]

Lookups go through the DependencyResolver on the context, which consults
the cross-system reference store and may create the missing dependency.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from src.retail_sync.sync.errors import SyncError, TransformationFailed
from src.retail_sync.sync.paths import get_path
from src.retail_sync.sync.schemas import EntityType, Transformation


class DependencyResolver(Protocol):
    """Resolves a foreign entity's target-platform id by natural key."""

    async def resolve(self, entity_type: EntityType, key: str, parent: dict[str, Any]) -> str: ...


@dataclass
class TransformContext:
    """Per-field context handed to every transformation call."""

    source_entity: dict[str, Any]
    field: str
    resolver: DependencyResolver | None = None


@dataclass(frozen=True)
class TransformFunction:
    name: str
    func: Callable[..., Any]
    min_args: int = 0
    max_args: int | None = 0
    lookup: EntityType | None = None

    def accepts(self, arg_count: int) -> bool:
        if arg_count < self.min_args:
            return False
        return self.max_args is None or arg_count <= self.max_args

    @property
    def arity(self) -> str:
        if self.max_args is None:
            return f"{self.min_args}+"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args}-{self.max_args}"


@dataclass
class TransformRegistry:
    _functions: dict[str, TransformFunction] = field(default_factory=dict)

    def register(
        self,
        name: str,
        min_args: int = 0,
        max_args: int | None = 0,
        lookup: EntityType | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self._functions[name] = TransformFunction(name, func, min_args, max_args, lookup)
            return func

        return decorator

    def get(self, name: str) -> TransformFunction | None:
        return self._functions.get(name)

    def names(self) -> list[str]:
        return sorted(self._functions)

    def lookup_entity(self, name: str) -> EntityType | None:
        fn = self._functions.get(name)
        return fn.lookup if fn else None

    async def apply(self, transformation: Transformation, value: Any, ctx: TransformContext) -> Any:
        """Apply one transformation, raising TransformationFailed on any failure.

        SyncErrors raised by lookups (e.g. DependencyUnresolvable, transient
        platform errors) propagate unchanged so they keep their kind.
        """
        fn = self.get(transformation.name)
        if fn is None:
            raise TransformationFailed(ctx.field, f"unknown transformation {transformation.name!r}")
        if not fn.accepts(len(transformation.args)):
            raise TransformationFailed(
                ctx.field,
                f"{transformation.name} expects {fn.arity} argument(s), got {len(transformation.args)}",
            )
        try:
            result = fn.func(value, *transformation.args, ctx=ctx)
            if inspect.isawaitable(result):
                result = await result
        except SyncError:
            raise
        except (ValueError, TypeError, KeyError, IndexError) as exc:
            raise TransformationFailed(ctx.field, f"{transformation.name}: {exc}") from exc
        return result


TRANSFORMS = TransformRegistry()


def _as_str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"value is not a string: {value!r}")
    return value


# ── String transforms ───────────────────────────────────────────────────────


@TRANSFORMS.register("uppercase")
def uppercase(value: Any, *, ctx: TransformContext) -> str:
    return _as_str(value).upper()


@TRANSFORMS.register("lowercase")
def lowercase(value: Any, *, ctx: TransformContext) -> str:
    return _as_str(value).lower()


@TRANSFORMS.register("trim")
def trim(value: Any, *, ctx: TransformContext) -> str:
    return _as_str(value).strip()


@TRANSFORMS.register("replace", min_args=2, max_args=2)
def replace(value: Any, old: str, new: str, *, ctx: TransformContext) -> str:
    return _as_str(value).replace(str(old), str(new))


@TRANSFORMS.register("split", min_args=2, max_args=2)
def split(value: Any, delimiter: str, index: int | str, *, ctx: TransformContext) -> str:
    parts = _as_str(value).split(str(delimiter))
    position = int(index)
    if position < 0 or position >= len(parts):
        raise IndexError(f"index {position} out of bounds for {len(parts)} part(s)")
    return parts[position]


@TRANSFORMS.register("to_string", min_args=0, max_args=1)
def to_string(value: Any, decimals: int | str | None = None, *, ctx: TransformContext) -> str:
    """Render a number (or anything) as text, optionally with fixed decimals."""
    if decimals is None:
        return str(value)
    return f"{float(value):.{int(decimals)}f}"


@TRANSFORMS.register("concat", min_args=1, max_args=None)
def concat(value: Any, separator: str, *paths: str, ctx: TransformContext) -> str:
    """Join the field value (or list) with values at extra source paths."""
    values = list(value) if isinstance(value, list) else [value]
    values.extend(get_path(ctx.source_entity, p) for p in paths)
    strings = [str(v) for v in values if v is not None and v != ""]
    if not strings:
        raise ValueError("no values to concatenate")
    return str(separator).join(strings)


# ── Date transforms ─────────────────────────────────────────────────────────

DATE_FORMATS = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD-MM-YYYY": "%d-%m-%Y",
}
ISO8601 = "ISO8601"


def _parse_date(value: Any, fmt: str) -> datetime:
    if isinstance(value, datetime):
        return value
    text = _as_str(value).strip()
    if fmt.upper() == ISO8601:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    if fmt not in DATE_FORMATS:
        raise ValueError(f"unsupported source format {fmt!r}")
    return datetime.strptime(text, DATE_FORMATS[fmt])


def _format_date(dt: datetime, fmt: str) -> str:
    if fmt.upper() == ISO8601:
        if dt.tzinfo is None or dt.utcoffset() == timezone.utc.utcoffset(None):
            return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
        return dt.isoformat()
    if fmt not in DATE_FORMATS:
        raise ValueError(f"unsupported target format {fmt!r}")
    return dt.strftime(DATE_FORMATS[fmt])


@TRANSFORMS.register("date_format", min_args=2, max_args=2)
def date_format(value: Any, from_format: str, to_format: str, *, ctx: TransformContext) -> str:
    return _format_date(_parse_date(value, str(from_format)), str(to_format))


# ── Lookup transforms ───────────────────────────────────────────────────────


def _resolver(ctx: TransformContext):
    if ctx.resolver is None:
        raise ValueError("lookup requires a dependency resolver")
    return ctx.resolver


@TRANSFORMS.register("lookup_customer", lookup=EntityType.CUSTOMER)
async def lookup_customer(value: Any, *, ctx: TransformContext) -> str:
    """Resolve a customer's target id by e-mail."""
    email = _as_str(value).strip().lower()
    return await _resolver(ctx).resolve(EntityType.CUSTOMER, email, ctx.source_entity)


@TRANSFORMS.register("lookup_product", lookup=EntityType.PRODUCT)
async def lookup_product(value: Any, *, ctx: TransformContext) -> str:
    """Resolve a product's target id by SKU."""
    sku = _as_str(value).strip()
    return await _resolver(ctx).resolve(EntityType.PRODUCT, sku, ctx.source_entity)


@TRANSFORMS.register("map_line_items", min_args=0, max_args=3, lookup=EntityType.PRODUCT)
async def map_line_items(
    value: Any,
    sku_field: str = "sku",
    qty_field: str = "quantity",
    price_field: str = "price",
    *,
    ctx: TransformContext,
) -> list[dict[str, Any]]:
    """Map storefront line items to QuickBooks SalesItemLineDetail lines."""
    if not isinstance(value, list):
        raise ValueError("line items is not an array")
    resolver = _resolver(ctx)
    lines: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise ValueError(f"line item {index} is not an object")
        sku = item.get(sku_field)
        if not sku:
            raise ValueError(f"line item {index} missing {sku_field}")
        quantity = item.get(qty_field)
        price = item.get(price_field, item.get("unit_price"))
        if quantity is None:
            raise ValueError(f"line item {index} missing {qty_field}")
        if price is None:
            raise ValueError(f"line item {index} missing {price_field}")
        quantity = float(quantity)
        unit_price = float(price)
        total = item.get("total")
        amount = float(total) if total not in (None, "") else quantity * unit_price
        item_id = await resolver.resolve(EntityType.PRODUCT, str(sku), item)
        lines.append({
            "LineNum": index + 1,
            "Amount": round(amount, 2),
            "Description": item.get("name"),
            "DetailType": "SalesItemLineDetail",
            "SalesItemLineDetail": {
                "ItemRef": {"value": item_id},
                "UnitPrice": unit_price,
                "Qty": quantity,
            },
        })
    return lines
