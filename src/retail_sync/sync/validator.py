"""Mapping validator -- structural checks run at save time and before every run.

validate(mapping, source_schema, target_schema) returns a list of
ValidationIssue (empty means valid):
- every source_path exists in the source schema, every target_path in the target schema
- every transformation is registered with a matching argument count
- target-platform structural ceilings (QuickBooks allows 3 custom fields)
- no two field maps write the same target path
- required fields without a default resolve from a declared source path

validate_dependency_graph(mappings) rejects lookup cycles between entity
types of one route, so dependency recursion always terminates.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from pydantic import BaseModel

from src.retail_sync.sync.errors import MappingValidationError
from src.retail_sync.sync.schemas import EntityType, FieldMap, FieldMapping, Platform
from src.retail_sync.sync.transformations import TRANSFORMS, TransformRegistry


class ValidationIssue(BaseModel):
    code: str
    field: str | None = None
    message: str

    def __str__(self) -> str:
        return f"[{self.code}] {self.field + ': ' if self.field else ''}{self.message}"


@dataclass(frozen=True)
class EntitySchema:
    """Declared field paths for one (platform, entity_type).

    Array elements are declared as ``line_items[].sku``. ``open_prefixes``
    admit platform-defined extension fields (custom fields, meta data).
    """

    platform: str
    entity_type: EntityType
    fields: frozenset[str]
    open_prefixes: tuple[str, ...] = ()

    def has_path(self, path: str) -> bool:
        normalized = path[:-2] if path.endswith("[]") else path
        if normalized in self.fields or f"{normalized}[]" in self.fields:
            return True
        if any(normalized.startswith(p) for p in self.open_prefixes):
            return True
        # Parent of a declared nested path (``billing`` when ``billing.email`` exists)
        return any(f.startswith(normalized + ".") or f.startswith(normalized + "[].") for f in self.fields)


@dataclass(frozen=True)
class FieldCeiling:
    """Hard cap on field maps whose target path starts with ``prefix``."""

    prefix: str
    limit: int
    label: str


@dataclass
class SchemaCatalog:
    schemas: dict[tuple[str, EntityType], EntitySchema] = field(default_factory=dict)
    ceilings: dict[str, list[FieldCeiling]] = field(default_factory=dict)

    def add(self, schema: EntitySchema) -> None:
        self.schemas[(schema.platform, schema.entity_type)] = schema

    def get(self, platform: str, entity_type: EntityType) -> EntitySchema | None:
        return self.schemas.get((platform, entity_type))


def _schema(platform: Platform, entity_type: EntityType, fields: Iterable[str], open_prefixes=()) -> EntitySchema:
    return EntitySchema(platform.value, entity_type, frozenset(fields), tuple(open_prefixes))


# ── Declared platform schemas ───────────────────────────────────────────────

_WOO_ADDRESS = ("first_name", "last_name", "company", "address_1", "address_2",
                "city", "state", "postcode", "country", "email", "phone")
_INTERNAL_ADDRESS = ("line1", "line2", "city", "region", "postal_code", "country")
_QBO_ADDRESS = ("Line1", "Line2", "City", "CountrySubDivisionCode", "PostalCode", "Country")

CATALOG = SchemaCatalog()

CATALOG.add(_schema(Platform.WOOCOMMERCE, EntityType.CUSTOMER, [
    "id", "email", "first_name", "last_name", "username", "date_created", "date_modified",
    *(f"billing.{f}" for f in _WOO_ADDRESS),
    *(f"shipping.{f}" for f in _WOO_ADDRESS),
], open_prefixes=("meta_data.",)))

CATALOG.add(_schema(Platform.WOOCOMMERCE, EntityType.PRODUCT, [
    "id", "name", "sku", "type", "status", "description", "short_description",
    "price", "regular_price", "sale_price", "stock_quantity", "manage_stock",
    "date_created", "date_modified",
], open_prefixes=("meta_data.",)))

CATALOG.add(_schema(Platform.WOOCOMMERCE, EntityType.ORDER, [
    "id", "number", "status", "currency", "date_created", "date_modified", "date_paid",
    "total", "total_tax", "customer_id", "customer_note", "payment_method", "set_paid",
    *(f"billing.{f}" for f in _WOO_ADDRESS),
    *(f"shipping.{f}" for f in _WOO_ADDRESS),
    "line_items[]", "line_items[].name", "line_items[].sku", "line_items[].quantity",
    "line_items[].price", "line_items[].total", "line_items[].product_id",
], open_prefixes=("meta_data.",)))

CATALOG.add(_schema(Platform.QUICKBOOKS, EntityType.CUSTOMER, [
    "Id", "SyncToken", "DisplayName", "GivenName", "FamilyName", "CompanyName",
    "PrimaryEmailAddr.Address", "PrimaryPhone.FreeFormNumber", "Notes", "Active",
    *(f"BillAddr.{f}" for f in _QBO_ADDRESS),
    *(f"ShipAddr.{f}" for f in _QBO_ADDRESS),
], open_prefixes=("CustomField.",)))

CATALOG.add(_schema(Platform.QUICKBOOKS, EntityType.PRODUCT, [
    "Id", "SyncToken", "Name", "Sku", "Type", "Description", "UnitPrice", "PurchaseCost",
    "QtyOnHand", "TrackQtyOnHand", "Active", "IncomeAccountRef.value", "IncomeAccountRef.name",
], open_prefixes=("CustomField.",)))

CATALOG.add(_schema(Platform.QUICKBOOKS, EntityType.ORDER, [
    "Id", "SyncToken", "DocNumber", "TxnDate", "DueDate", "PrivateNote", "CustomerMemo.value",
    "CustomerRef.value", "CustomerRef.name", "TotalAmt", "BillEmail.Address",
    *(f"BillAddr.{f}" for f in _QBO_ADDRESS),
    *(f"ShipAddr.{f}" for f in _QBO_ADDRESS),
    "Line[]", "Line[].LineNum", "Line[].Amount", "Line[].Description", "Line[].DetailType",
    "Line[].SalesItemLineDetail.ItemRef.value", "Line[].SalesItemLineDetail.UnitPrice",
    "Line[].SalesItemLineDetail.Qty",
], open_prefixes=("CustomField.",)))

CATALOG.add(_schema(Platform.INTERNAL, EntityType.CUSTOMER, [
    "id", "email", "first_name", "last_name", "phone", "company", "notes", "is_active",
    "loyalty_tier", "updated_at", *(f"address.{f}" for f in _INTERNAL_ADDRESS),
]))

CATALOG.add(_schema(Platform.INTERNAL, EntityType.PRODUCT, [
    "id", "sku", "name", "description", "category", "price", "cost", "quantity",
    "status", "is_active", "updated_at",
]))

CATALOG.ceilings[Platform.QUICKBOOKS.value] = [
    FieldCeiling(prefix="CustomField.", limit=3, label="QuickBooks custom fields"),
]


# ── Validator ───────────────────────────────────────────────────────────────


class MappingValidator:
    """Validates FieldMappings against declared schemas and the transform registry."""

    def __init__(self, catalog: SchemaCatalog | None = None, registry: TransformRegistry | None = None) -> None:
        self._catalog = catalog or CATALOG
        self._registry = registry or TRANSFORMS

    def schemas_for(self, mapping: FieldMapping) -> tuple[EntitySchema | None, EntitySchema | None]:
        return (
            self._catalog.get(mapping.source_platform, mapping.entity_type),
            self._catalog.get(mapping.target_platform, mapping.entity_type),
        )

    def validate(
        self,
        mapping: FieldMapping,
        source_schema: EntitySchema | None = None,
        target_schema: EntitySchema | None = None,
    ) -> list[ValidationIssue]:
        """Return every structural problem with ``mapping`` (empty list = valid)."""
        if source_schema is None or target_schema is None:
            default_source, default_target = self.schemas_for(mapping)
            source_schema = source_schema or default_source
            target_schema = target_schema or default_target

        issues: list[ValidationIssue] = []
        if source_schema is None:
            issues.append(ValidationIssue(
                code="unknown_source_schema",
                message=f"No schema declared for {mapping.source_platform}/{mapping.entity_type.value}",
            ))
        if target_schema is None:
            issues.append(ValidationIssue(
                code="unknown_target_schema",
                message=f"No schema declared for {mapping.target_platform}/{mapping.entity_type.value}",
            ))
        if not mapping.field_maps:
            issues.append(ValidationIssue(code="empty_mapping", message="Mapping has no field maps"))

        self._check_maps(mapping, mapping.field_maps, source_schema, target_schema, "", "", issues, top_level=True)
        self._check_orphan_transformations(mapping, issues)
        self._check_ceilings(mapping, issues)
        return issues

    def ensure_valid(self, mapping: FieldMapping) -> None:
        issues = self.validate(mapping)
        if issues:
            raise MappingValidationError(issues)

    def validate_dependency_graph(self, mappings: Iterable[FieldMapping]) -> list[ValidationIssue]:
        """Reject lookup cycles between entity types of the same route."""
        graph: dict[EntityType, set[EntityType]] = {}
        for mapping in mappings:
            edges = graph.setdefault(mapping.entity_type, set())
            for transformation in self._all_transformations(mapping):
                target = self._registry.lookup_entity(transformation.name)
                if target is not None:
                    edges.add(target)

        issues: list[ValidationIssue] = []
        visiting: list[EntityType] = []
        done: set[EntityType] = set()

        def visit(node: EntityType) -> None:
            if node in done:
                return
            if node in visiting:
                cycle = visiting[visiting.index(node):] + [node]
                issues.append(ValidationIssue(
                    code="dependency_cycle",
                    message=" -> ".join(e.value for e in cycle),
                ))
                return
            visiting.append(node)
            for child in sorted(graph.get(node, ()), key=lambda e: e.value):
                visit(child)
            visiting.pop()
            done.add(node)

        for node in sorted(graph, key=lambda e: e.value):
            visit(node)
        return issues

    # ── Checks ──────────────────────────────────────────────────────────

    def _check_maps(
        self,
        mapping: FieldMapping,
        field_maps: list[FieldMap],
        source_schema: EntitySchema | None,
        target_schema: EntitySchema | None,
        source_prefix: str,
        target_prefix: str,
        issues: list[ValidationIssue],
        top_level: bool = False,
    ) -> None:
        seen_targets: set[str] = set()
        for fm in field_maps:
            source_path = f"{source_prefix}{fm.source_base}"
            target_path = f"{target_prefix}{fm.target_base}"

            if fm.target_base in seen_targets:
                issues.append(ValidationIssue(
                    code="duplicate_target", field=target_path,
                    message="target path is mapped more than once",
                ))
            seen_targets.add(fm.target_base)

            if source_schema is not None and not source_schema.has_path(source_path):
                if fm.default_value is None:
                    issues.append(ValidationIssue(
                        code="unknown_source_path", field=source_path,
                        message=f"not declared in {source_schema.platform} {source_schema.entity_type.value} schema",
                    ))
            if target_schema is not None and not target_schema.has_path(target_path):
                issues.append(ValidationIssue(
                    code="unknown_target_path", field=target_path,
                    message=f"not declared in {target_schema.platform} {target_schema.entity_type.value} schema",
                ))

            transforms = mapping.transformations_for(fm) if top_level else fm.transformations
            for transformation in transforms:
                fn = self._registry.get(transformation.name)
                if fn is None:
                    issues.append(ValidationIssue(
                        code="unknown_transformation", field=target_path,
                        message=f"{transformation.name!r} is not a registered transformation",
                    ))
                elif not fn.accepts(len(transformation.args)):
                    issues.append(ValidationIssue(
                        code="transformation_arity", field=target_path,
                        message=f"{transformation.name} expects {fn.arity} argument(s), got {len(transformation.args)}",
                    ))

            if fm.children:
                if not fm.array:
                    issues.append(ValidationIssue(
                        code="children_on_scalar", field=source_path,
                        message="child field maps require an array source path",
                    ))
                self._check_maps(
                    mapping, fm.children, source_schema, target_schema,
                    f"{source_path}[].", f"{target_path}[].", issues,
                )

    def _check_orphan_transformations(self, mapping: FieldMapping, issues: list[ValidationIssue]) -> None:
        targets = {fm.target_path for fm in mapping.field_maps}
        for transformation in mapping.transformations:
            if transformation.field not in targets:
                issues.append(ValidationIssue(
                    code="orphan_transformation", field=transformation.field,
                    message=f"{transformation.name} targets a field no FieldMap writes",
                ))

    def _check_ceilings(self, mapping: FieldMapping, issues: list[ValidationIssue]) -> None:
        for ceiling in self._catalog.ceilings.get(mapping.target_platform, []):
            offending = [fm.target_path for fm in mapping.field_maps if fm.target_path.startswith(ceiling.prefix)]
            if len(offending) > ceiling.limit:
                issues.append(ValidationIssue(
                    code="field_ceiling_exceeded",
                    field=", ".join(offending),
                    message=f"{ceiling.label}: {len(offending)} mapped, maximum is {ceiling.limit}",
                ))

    @staticmethod
    def _all_transformations(mapping: FieldMapping):
        yield from mapping.transformations

        def walk(maps: list[FieldMap]):
            for fm in maps:
                yield from fm.transformations
                yield from walk(fm.children)

        yield from walk(mapping.field_maps)
