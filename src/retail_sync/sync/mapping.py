"""Mapping engine -- a data-driven interpreter over FieldMap records.

transform(mapping, source_entity, resolver) walks each FieldMap, applies
its transformations in declared order and assembles the target payload.
Any failure aborts the whole entity: callers get either a complete payload
or a MappingError, never a partial result.

Lookup transformations call back into the DependencyResolver supplied by
the flow adapter; that is the only place the engine can recurse into
another entity's sync.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.retail_sync.sync.errors import RequiredFieldMissing, TransformationFailed
from src.retail_sync.sync.paths import get_path, set_path
from src.retail_sync.sync.schemas import FieldMap, FieldMapping, Transformation
from src.retail_sync.sync.transformations import (
    TRANSFORMS,
    DependencyResolver,
    TransformContext,
    TransformRegistry,
)

logger = structlog.get_logger(__name__)


class MappingEngine:
    """Applies a validated FieldMapping to one source entity.

    Args:
        registry: Transformation registry. Defaults to the built-in closed set.
    """

    def __init__(self, registry: TransformRegistry | None = None) -> None:
        self._registry = registry or TRANSFORMS

    @property
    def registry(self) -> TransformRegistry:
        return self._registry

    async def transform(
        self,
        mapping: FieldMapping,
        source_entity: dict[str, Any],
        resolver: DependencyResolver | None = None,
    ) -> dict[str, Any]:
        """Transform ``source_entity`` into the target representation.

        Raises:
            TransformationFailed: a transformation raised or is unknown.
            RequiredFieldMissing: a required field is null after transformation.
            DependencyUnresolvable: a lookup could not resolve its dependency.
        """
        payload = await self._apply_maps(
            mapping.field_maps,
            source_entity,
            resolver,
            transformations_for=mapping.transformations_for,
        )
        logger.debug(
            "mapping.transformed",
            entity_type=mapping.entity_type.value,
            route=mapping.route,
            fields=len(payload),
        )
        return payload

    async def _apply_maps(
        self,
        field_maps: list[FieldMap],
        source: dict[str, Any],
        resolver: DependencyResolver | None,
        transformations_for=None,
        prefix: str = "",
    ) -> dict[str, Any]:
        target: dict[str, Any] = {}
        for field_map in field_maps:
            transforms = (
                transformations_for(field_map) if transformations_for else field_map.transformations
            )
            field_name = f"{prefix}{field_map.target_base}"
            value = await self._resolve_field(field_map, source, resolver, transforms, field_name)
            if value is None:
                continue
            set_path(target, field_map.target_base, value)
        return target

    async def _resolve_field(
        self,
        field_map: FieldMap,
        source: dict[str, Any],
        resolver: DependencyResolver | None,
        transforms: list[Transformation],
        field_name: str,
    ) -> Any:
        value = get_path(source, field_map.source_base)
        if value is None:
            value = field_map.default_value

        if value is not None and field_map.array and field_map.children:
            if not isinstance(value, list):
                raise TransformationFailed(field_name, "array field is not a list")
            value = [
                await self._apply_maps(
                    field_map.children,
                    element if isinstance(element, dict) else {"value": element},
                    resolver,
                    prefix=f"{field_name}[{index}].",
                )
                for index, element in enumerate(value)
            ]

        if value is not None:
            ctx = TransformContext(source_entity=source, field=field_name, resolver=resolver)
            for transformation in transforms:
                value = await self._registry.apply(transformation, value, ctx)
                if value is None:
                    break

        if value is None and field_map.default_value is not None:
            value = field_map.default_value
        if value is None and field_map.required:
            raise RequiredFieldMissing(field_name)
        return value
