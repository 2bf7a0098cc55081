"""Tests for MappingEngine.transform and MappingValidator."""

from __future__ import annotations

from typing import Any

import pytest

from src.retail_sync.sync.errors import MappingValidationError, RequiredFieldMissing, TransformationFailed
from src.retail_sync.sync.mapping import MappingEngine
from src.retail_sync.sync.routes import INTERNAL_TO_WOO, ROUTES, WOO_TO_QBO
from src.retail_sync.sync.schemas import EntityType, FieldMap, FieldMapping, Transformation
from src.retail_sync.sync.validator import MappingValidator

from tests.doubles import TENANT_ID, RecordingResolver


def _make_mapping(**overrides: Any) -> FieldMapping:
    defaults: dict[str, Any] = {
        "tenant_id": TENANT_ID,
        "source_platform": "woocommerce",
        "target_platform": "quickbooks",
        "entity_type": EntityType.CUSTOMER,
        "field_maps": [
            FieldMap(source_path="email", target_path="PrimaryEmailAddr.Address", required=True,
                     transformations=[Transformation(name="lowercase")]),
            FieldMap(source_path="first_name", target_path="GivenName"),
        ],
    }
    defaults.update(overrides)
    return FieldMapping(**defaults)


def _woo_order(**overrides: Any) -> dict[str, Any]:
    order: dict[str, Any] = {
        "id": 77,
        "number": "1077",
        "status": "pending",
        "date_created": "2024-05-01T09:30:00",
        "billing": {"email": "Ada@Example.com", "first_name": "Ada", "city": "Calgary"},
        "line_items": [{"sku": "MUG", "quantity": 2, "price": 7.5, "name": "Mug"}],
    }
    order.update(overrides)
    return order


# ── Engine ───────────────────────────────────────────────────────────────────


class TestMappingEngine:
    async def test_transform_builds_nested_payload(self):
        payload = await MappingEngine().transform(_make_mapping(), {"email": "ADA@X.IO", "first_name": "Ada"})
        assert payload == {"PrimaryEmailAddr": {"Address": "ada@x.io"}, "GivenName": "Ada"}

    async def test_missing_optional_fields_are_omitted(self):
        payload = await MappingEngine().transform(_make_mapping(), {"email": "a@x.io"})
        assert "GivenName" not in payload

    async def test_required_field_missing(self):
        with pytest.raises(RequiredFieldMissing) as exc_info:
            await MappingEngine().transform(_make_mapping(), {"first_name": "Ada"})
        assert exc_info.value.field == "PrimaryEmailAddr.Address"

    async def test_default_value_used_when_source_missing(self):
        mapping = _make_mapping(field_maps=[FieldMap(source_path="", target_path="Type", default_value="NonInventory")])
        assert await MappingEngine().transform(mapping, {}) == {"Type": "NonInventory"}

    async def test_transformations_apply_in_declared_order(self):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path="name", target_path="Name", transformations=[
                Transformation(name="trim"),
                Transformation(name="replace", args=[" ", "_"]),
                Transformation(name="uppercase"),
            ]),
        ])
        assert await MappingEngine().transform(mapping, {"name": "  big mug "}) == {"Name": "BIG_MUG"}

    async def test_mapping_level_transformations_follow_inline_ones(self):
        mapping = _make_mapping(
            field_maps=[FieldMap(source_path="name", target_path="Name", transformations=[Transformation(name="trim")])],
            transformations=[Transformation(name="uppercase", field="Name")],
        )
        assert await MappingEngine().transform(mapping, {"name": " mug "}) == {"Name": "MUG"}

    async def test_failure_never_returns_partial_payload(self):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path="name", target_path="Name"),
            FieldMap(source_path="created", target_path="TxnDate",
                     transformations=[Transformation(name="date_format", args=["YYYY-MM-DD", "MM/DD/YYYY"])]),
        ])
        with pytest.raises(TransformationFailed) as exc_info:
            await MappingEngine().transform(mapping, {"name": "Mug", "created": "not a date"})
        assert exc_info.value.field == "TxnDate"

    async def test_array_children_apply_per_element(self):
        mapping = _make_mapping(entity_type=EntityType.ORDER, field_maps=[
            FieldMap(source_path="line_items[]", target_path="Line[]", children=[
                FieldMap(source_path="name", target_path="Description", transformations=[Transformation(name="uppercase")]),
                FieldMap(source_path="quantity", target_path="Qty"),
            ]),
        ])
        payload = await MappingEngine().transform(
            mapping, {"line_items": [{"name": "mug", "quantity": 1}, {"name": "tee", "quantity": 3}]},
        )
        assert payload == {"Line": [{"Description": "MUG", "Qty": 1}, {"Description": "TEE", "Qty": 3}]}

    async def test_default_woo_order_mapping_resolves_dependencies(self):
        resolver = RecordingResolver()
        mapping = WOO_TO_QBO.default_mapping(TENANT_ID, EntityType.ORDER)
        payload = await MappingEngine().transform(mapping, _woo_order(), resolver)

        assert payload["CustomerRef"] == {"value": "customer-ada@example.com"}
        assert payload["TxnDate"] == "2024-05-01"
        assert payload["DocNumber"] == "1077"
        assert payload["Line"][0]["SalesItemLineDetail"]["ItemRef"] == {"value": "product-MUG"}
        assert payload["BillAddr"] == {"City": "Calgary"}
        assert (resolver.calls[0], resolver.calls[-1]) == (
            (EntityType.CUSTOMER, "ada@example.com"), (EntityType.PRODUCT, "MUG"),
        )


# ── Validator ────────────────────────────────────────────────────────────────


class TestMappingValidator:
    @pytest.mark.parametrize("definition", list(ROUTES.values()), ids=list(ROUTES))
    def test_default_route_mappings_are_valid(self, definition):
        validator = MappingValidator()
        mappings = [definition.default_mapping(TENANT_ID, e) for e in definition.entity_types]
        for mapping in mappings:
            assert validator.validate(mapping) == []
        assert validator.validate_dependency_graph(mappings) == []

    def test_unknown_paths(self):
        mapping = _make_mapping(field_maps=[FieldMap(source_path="nickname", target_path="Nick")])
        codes = {i.code for i in MappingValidator().validate(mapping)}
        assert codes == {"unknown_source_path", "unknown_target_path"}

    def test_unknown_transformation_and_arity(self):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path="email", target_path="PrimaryEmailAddr.Address",
                     transformations=[Transformation(name="rot13"), Transformation(name="split", args=[" "])]),
        ])
        codes = [i.code for i in MappingValidator().validate(mapping)]
        assert codes == ["unknown_transformation", "transformation_arity"]

    def test_duplicate_target_path(self):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path="first_name", target_path="GivenName"),
            FieldMap(source_path="last_name", target_path="GivenName"),
        ])
        assert [i.code for i in MappingValidator().validate(mapping)] == ["duplicate_target"]

    def test_quickbooks_custom_field_ceiling(self):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path=f"meta_data.f{i}", target_path=f"CustomField.f{i}") for i in range(4)
        ])
        issues = MappingValidator().validate(mapping)
        assert [i.code for i in issues] == ["field_ceiling_exceeded"]

    @pytest.mark.parametrize("custom_fields", range(11))
    def test_custom_field_ceiling_boundary(self, custom_fields):
        mapping = _make_mapping(field_maps=[
            FieldMap(source_path="email", target_path="PrimaryEmailAddr.Address"),
            *(
                FieldMap(source_path=f"meta_data.f{i}", target_path=f"CustomField.f{i}")
                for i in range(custom_fields)
            ),
        ])
        codes = [i.code for i in MappingValidator().validate(mapping)]
        if custom_fields <= 3:
            assert codes == []
        else:
            assert codes == ["field_ceiling_exceeded"]

    def test_orphan_mapping_level_transformation(self):
        mapping = _make_mapping(transformations=[Transformation(name="trim", field="DisplayName")])
        assert [i.code for i in MappingValidator().validate(mapping)] == ["orphan_transformation"]

    def test_empty_mapping_and_unknown_schema(self):
        mapping = _make_mapping(source_platform="warehouse", field_maps=[])
        codes = {i.code for i in MappingValidator().validate(mapping)}
        assert codes == {"unknown_source_schema", "empty_mapping"}

    def test_ensure_valid_raises_with_issues(self):
        mapping = _make_mapping(field_maps=[FieldMap(source_path="nickname", target_path="GivenName")])
        with pytest.raises(MappingValidationError) as exc_info:
            MappingValidator().ensure_valid(mapping)
        assert exc_info.value.issues[0].field == "nickname"

    def test_dependency_cycle_detected(self):
        customer = _make_mapping(field_maps=[
            FieldMap(source_path="billing.company", target_path="CompanyName",
                     transformations=[Transformation(name="lookup_product")]),
        ])
        product = _make_mapping(
            entity_type=EntityType.PRODUCT,
            field_maps=[FieldMap(source_path="sku", target_path="Sku", transformations=[Transformation(name="lookup_customer")])],
        )
        issues = MappingValidator().validate_dependency_graph([customer, product])
        assert [i.code for i in issues] == ["dependency_cycle"]
        assert issues[0].message == "customer -> product -> customer"

    def test_internal_route_has_no_lookups(self):
        mappings = [INTERNAL_TO_WOO.default_mapping(TENANT_ID, e) for e in INTERNAL_TO_WOO.entity_types]
        assert MappingValidator().validate_dependency_graph(mappings) == []
