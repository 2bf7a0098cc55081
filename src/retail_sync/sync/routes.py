"""Route definitions and their default field mappings.

A RouteDefinition describes one (source platform, target platform) pair:
which entity types it carries, the platform object names on each side,
the natural keys used to resolve dependencies, and the default mapping a
tenant starts from before customising it.

Routes:
- woocommerce-to-quickbooks: customers -> Customer, products -> Item,
  orders -> SalesReceipt (paid) or Invoice (unpaid)
- internal-to-woocommerce: back-office customers and products pushed to the storefront
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from src.retail_sync.sync.schemas import (
    ENTITY_ORDER,
    EntityType,
    FieldMap,
    FieldMapping,
    Platform,
    RawEntity,
    Route,
    Transformation,
)


@dataclass(frozen=True)
class NaturalKey:
    """How to find one entity by a business key on each side of a route."""

    source_field: str
    target_field: str


@dataclass
class RouteDefinition:
    route: Route
    source_objects: dict[EntityType, str]
    target_objects: dict[EntityType, str]
    natural_keys: dict[EntityType, NaturalKey] = field(default_factory=dict)
    default_field_maps: dict[EntityType, list[FieldMap]] = field(default_factory=dict)
    target_object_resolver: Callable[[EntityType, RawEntity], str | None] | None = None
    embedded_dependency: Callable[[EntityType, str, dict[str, Any]], RawEntity | None] | None = None

    @property
    def key(self) -> str:
        return self.route.key

    @property
    def entity_types(self) -> list[EntityType]:
        return self.ordered(self.source_objects)

    @staticmethod
    def ordered(entity_types: Iterable[EntityType]) -> list[EntityType]:
        """Parents before children (customer, product, inventory, order, ...)."""
        return sorted(set(entity_types), key=lambda e: ENTITY_ORDER[e])

    def source_object(self, entity_type: EntityType) -> str:
        return self.source_objects[entity_type]

    def target_object(self, entity_type: EntityType, raw: RawEntity | None = None) -> str:
        if self.target_object_resolver is not None and raw is not None:
            resolved = self.target_object_resolver(entity_type, raw)
            if resolved:
                return resolved
        return self.target_objects[entity_type]

    def default_mapping(self, tenant_id: str, entity_type: EntityType) -> FieldMapping:
        return FieldMapping(
            tenant_id=tenant_id,
            source_platform=self.route.source,
            target_platform=self.route.target,
            entity_type=entity_type,
            field_maps=[fm.model_copy(deep=True) for fm in self.default_field_maps.get(entity_type, [])],
        )


def _fm(source: str, target: str, *transforms: Transformation, **kwargs: Any) -> FieldMap:
    return FieldMap(source_path=source, target_path=target, transformations=list(transforms), **kwargs)


def _t(name: str, *args: Any) -> Transformation:
    return Transformation(name=name, args=list(args))


# ── WooCommerce -> QuickBooks ───────────────────────────────────────────────

_WOO_PAID_STATUSES = {"processing", "completed"}


def _woo_order_is_paid(data: dict[str, Any]) -> bool:
    return bool(data.get("date_paid") or data.get("set_paid")) or data.get("status") in _WOO_PAID_STATUSES


def _woo_to_qbo_target_object(entity_type: EntityType, raw: RawEntity) -> str | None:
    if entity_type == EntityType.ORDER:
        return "SalesReceipt" if _woo_order_is_paid(raw.data) else "Invoice"
    return None


def _woo_embedded_dependency(entity_type: EntityType, key: str, parent: dict[str, Any]) -> RawEntity | None:
    """Build a dependency from data embedded in the referencing record.

    Guest checkouts have no storefront customer account; the order's billing
    block carries everything needed to create one at the target.
    """
    if entity_type == EntityType.CUSTOMER:
        billing = parent.get("billing") or {}
        if not billing.get("email"):
            return None
        return RawEntity(
            id=f"guest:{key}",
            data={
                "email": key,
                "first_name": billing.get("first_name"),
                "last_name": billing.get("last_name"),
                "billing": billing,
            },
        )
    if entity_type == EntityType.PRODUCT and parent.get("sku"):
        return RawEntity(
            id=f"sku:{key}",
            data={"sku": key, "name": parent.get("name") or key, "regular_price": parent.get("price")},
        )
    return None


def _address(prefix: str, target: str) -> list[FieldMap]:
    return [
        _fm(f"{prefix}.address_1", f"{target}.Line1"),
        _fm(f"{prefix}.address_2", f"{target}.Line2"),
        _fm(f"{prefix}.city", f"{target}.City"),
        _fm(f"{prefix}.state", f"{target}.CountrySubDivisionCode"),
        _fm(f"{prefix}.postcode", f"{target}.PostalCode"),
        _fm(f"{prefix}.country", f"{target}.Country"),
    ]


WOO_TO_QBO = RouteDefinition(
    route=Route(source=Platform.WOOCOMMERCE.value, target=Platform.QUICKBOOKS.value),
    source_objects={
        EntityType.CUSTOMER: "customers",
        EntityType.PRODUCT: "products",
        EntityType.ORDER: "orders",
    },
    target_objects={
        EntityType.CUSTOMER: "Customer",
        EntityType.PRODUCT: "Item",
        EntityType.ORDER: "Invoice",
    },
    natural_keys={
        EntityType.CUSTOMER: NaturalKey(source_field="email", target_field="PrimaryEmailAddr"),
        EntityType.PRODUCT: NaturalKey(source_field="sku", target_field="Sku"),
    },
    default_field_maps={
        EntityType.CUSTOMER: [
            _fm("email", "PrimaryEmailAddr.Address", _t("trim"), _t("lowercase"), required=True),
            _fm("first_name", "DisplayName", _t("concat", " ", "last_name"), required=True),
            _fm("first_name", "GivenName"),
            _fm("last_name", "FamilyName"),
            _fm("billing.company", "CompanyName"),
            _fm("billing.phone", "PrimaryPhone.FreeFormNumber"),
            *_address("billing", "BillAddr"),
        ],
        EntityType.PRODUCT: [
            _fm("name", "Name", _t("trim"), required=True),
            _fm("sku", "Sku", required=True),
            _fm("description", "Description"),
            _fm("regular_price", "UnitPrice"),
            _fm("", "Type", default_value="NonInventory"),
            _fm("", "IncomeAccountRef.value", default_value="79"),
            _fm("", "IncomeAccountRef.name", default_value="Sales"),
        ],
        EntityType.ORDER: [
            _fm("number", "DocNumber"),
            _fm("date_created", "TxnDate", _t("date_format", "ISO8601", "YYYY-MM-DD"), required=True),
            _fm("billing.email", "CustomerRef.value", _t("lookup_customer"), required=True),
            _fm("billing.email", "BillEmail.Address"),
            _fm("line_items[]", "Line", _t("map_line_items"), required=True),
            _fm("customer_note", "PrivateNote"),
            *_address("billing", "BillAddr"),
            *_address("shipping", "ShipAddr"),
        ],
    },
    target_object_resolver=_woo_to_qbo_target_object,
    embedded_dependency=_woo_embedded_dependency,
)


# ── Internal -> WooCommerce ─────────────────────────────────────────────────

INTERNAL_TO_WOO = RouteDefinition(
    route=Route(source=Platform.INTERNAL.value, target=Platform.WOOCOMMERCE.value),
    source_objects={
        EntityType.CUSTOMER: "customers",
        EntityType.PRODUCT: "products",
    },
    target_objects={
        EntityType.CUSTOMER: "customers",
        EntityType.PRODUCT: "products",
    },
    natural_keys={
        EntityType.CUSTOMER: NaturalKey(source_field="email", target_field="email"),
        EntityType.PRODUCT: NaturalKey(source_field="sku", target_field="sku"),
    },
    default_field_maps={
        EntityType.CUSTOMER: [
            _fm("email", "email", _t("trim"), _t("lowercase"), required=True),
            _fm("first_name", "first_name"),
            _fm("last_name", "last_name"),
            _fm("phone", "billing.phone"),
            _fm("company", "billing.company"),
            _fm("address.line1", "billing.address_1"),
            _fm("address.line2", "billing.address_2"),
            _fm("address.city", "billing.city"),
            _fm("address.region", "billing.state"),
            _fm("address.postal_code", "billing.postcode"),
            _fm("address.country", "billing.country"),
        ],
        EntityType.PRODUCT: [
            _fm("sku", "sku", required=True),
            _fm("name", "name", required=True),
            _fm("description", "description"),
            _fm("price", "regular_price", _t("to_string", 2)),
            _fm("quantity", "stock_quantity"),
            _fm("", "manage_stock", default_value=True),
        ],
    },
)


ROUTES: dict[str, RouteDefinition] = {
    definition.key: definition for definition in (WOO_TO_QBO, INTERNAL_TO_WOO)
}
