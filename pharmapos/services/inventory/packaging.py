"""
Packaging Service
Packaging hierarchies of drugs and their effective per-shop configuration
"""
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from pharmapos.core.exceptions import NotFoundError, ValidationError
from pharmapos.core.logging import get_logger
from .batch import to_decimal

logger = get_logger("inventory.packaging")


@dataclass
class PackagingLevel:
    """
    One level of a packaging hierarchy, e.g. Tablet -> Strip (10) -> Box (100).

    Level 1 is the base unit; ``base_unit_quantity`` counts base units per unit
    of this level.
    """
    level_number: int
    unit_name: str
    base_unit_quantity: Decimal
    quantity_per_parent: Decimal = Decimal("1")
    is_sellable: bool = True
    is_default: bool = False
    is_breakable: bool = True
    barcode: Optional[str] = None
    minimum_sale_quantity: Optional[Decimal] = None
    level_id: str = field(default_factory=lambda: f"PKG-LV-{uuid.uuid4().hex.upper()}")

    def __post_init__(self):
        self.base_unit_quantity = to_decimal(self.base_unit_quantity, "base unit quantity")
        self.quantity_per_parent = to_decimal(self.quantity_per_parent, "quantity per parent")
        if self.minimum_sale_quantity is not None:
            self.minimum_sale_quantity = to_decimal(self.minimum_sale_quantity, "minimum sale quantity")
        if self.level_number == 1:
            self.quantity_per_parent = Decimal("1")

    def units_from_base(self, base_quantity) -> Decimal:
        if self.base_unit_quantity <= 0:
            return Decimal("0")
        return to_decimal(base_quantity, "quantity") / self.base_unit_quantity

    def base_from_units(self, quantity) -> Decimal:
        return to_decimal(quantity, "quantity") * self.base_unit_quantity

    def to_dict(self) -> dict:
        return {
            "level_id": self.level_id,
            "level_number": self.level_number,
            "unit_name": self.unit_name,
            "base_unit_quantity": str(self.base_unit_quantity),
            "quantity_per_parent": str(self.quantity_per_parent),
            "is_sellable": self.is_sellable,
            "is_default": self.is_default,
            "is_breakable": self.is_breakable,
            "barcode": self.barcode,
            "minimum_sale_quantity": (
                None if self.minimum_sale_quantity is None else str(self.minimum_sale_quantity)
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PackagingLevel":
        return cls(**data)


@dataclass
class PackagingInfo:
    """How a drug is measured, packaged and sold"""
    base_unit: str
    base_unit_display_name: str = ""
    is_subdivisible: bool = True
    levels: List[PackagingLevel] = field(default_factory=list)

    def __post_init__(self):
        self.levels = sorted(self.levels, key=lambda level: level.level_number)

    def add_level(self, level: PackagingLevel) -> None:
        """Add a level; a new default level replaces the previous default"""
        if level.is_default:
            for existing in self.levels:
                existing.is_default = False
        if level.level_number > 1 and level.quantity_per_parent <= 0:
            parent = self.level_by_number(level.level_number - 1)
            if parent is not None and parent.base_unit_quantity > 0:
                level.quantity_per_parent = level.base_unit_quantity / parent.base_unit_quantity
        self.levels.append(level)
        self.levels.sort(key=lambda l: l.level_number)

    def default_sell_unit(self) -> Optional[PackagingLevel]:
        return next((level for level in self.levels if level.is_default), None)

    def sellable_levels(self) -> List[PackagingLevel]:
        return [level for level in self.levels if level.is_sellable]

    def base_level(self) -> Optional[PackagingLevel]:
        return self.level_by_number(1)

    def level_by_number(self, level_number: int) -> Optional[PackagingLevel]:
        return next((level for level in self.levels if level.level_number == level_number), None)

    def level_by_unit_name(self, unit_name: str) -> Optional[PackagingLevel]:
        wanted = (unit_name or "").lower()
        return next((level for level in self.levels if level.unit_name.lower() == wanted), None)

    def convert_quantity(self, quantity, from_unit: str, to_unit: str) -> Decimal:
        """Convert a quantity between two levels through base units"""
        source = self.level_by_unit_name(from_unit)
        target = self.level_by_unit_name(to_unit)
        if source is None or target is None:
            raise ValidationError(
                f"Unknown packaging unit(s) '{from_unit}' -> '{to_unit}' for base unit {self.base_unit}",
                entity="PackagingInfo",
            )
        return target.units_from_base(source.base_from_units(quantity))

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []

        if not self.levels:
            errors.append("Packaging must have at least one level")
        if self.base_level() is None:
            errors.append("Packaging must have a base level (level 1)")

        ids = [level.level_id.lower() for level in self.levels]
        if len(ids) != len(set(ids)):
            errors.append("Each packaging level must have a unique id")

        defaults = [level for level in self.levels if level.is_default]
        if len(defaults) > 1:
            errors.append("Only one packaging level can be marked as default")
        if defaults and not defaults[0].is_sellable:
            errors.append("Default sell unit must be sellable")

        numbers = sorted(level.level_number for level in self.levels)
        if numbers != list(range(1, len(numbers) + 1)):
            errors.append("Packaging level numbers must be sequential starting from 1")

        for level in self.levels:
            if level.base_unit_quantity <= 0:
                errors.append(f"Level {level.level_number} ({level.unit_name}) must have base unit quantity > 0")
            if level.level_number > 1 and level.quantity_per_parent <= 0:
                errors.append(f"Level {level.level_number} ({level.unit_name}) must have quantity per parent > 0")

        return len(errors) == 0, errors

    def to_dict(self) -> dict:
        return {
            "base_unit": self.base_unit,
            "base_unit_display_name": self.base_unit_display_name,
            "is_subdivisible": self.is_subdivisible,
            "levels": [level.to_dict() for level in self.levels],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PackagingInfo":
        return cls(
            base_unit=data["base_unit"],
            base_unit_display_name=data.get("base_unit_display_name", ""),
            is_subdivisible=data.get("is_subdivisible", True),
            levels=[PackagingLevel.from_dict(level) for level in data.get("levels", [])],
        )


class EffectivePackagingResolver:
    """
    Resolves the packaging a shop actually sells a drug in.

    A shop override replaces the catalog packaging when one exists.
    """

    def __init__(self, repository):
        self.repository = repository

    async def resolve(self, shop_id: str, drug_id: str) -> PackagingInfo:
        catalog = await self.repository.resolve_catalog_packaging(drug_id)
        if catalog is None:
            raise NotFoundError("Drug", drug_id)

        override = await self.repository.resolve_shop_packaging_override(shop_id, drug_id)
        if override is not None:
            logger.debug(f"Using shop {shop_id} packaging override for drug {drug_id}")
            return override
        return catalog

    async def default_sell_unit(
        self,
        shop_id: str,
        drug_id: str,
        preferred_unit: Optional[str] = None
    ) -> Optional[PackagingLevel]:
        """
        Level a shop sells by default: the preferred unit when it is sellable, then
        the packaging's default level, then the first sellable level.
        """
        packaging = await self.resolve(shop_id, drug_id)

        if preferred_unit:
            level = packaging.level_by_unit_name(preferred_unit)
            if level is not None and level.is_sellable:
                return level
            logger.debug(f"Preferred unit '{preferred_unit}' is not sellable for drug {drug_id} at shop {shop_id}")

        default = packaging.default_sell_unit()
        if default is not None and default.is_sellable:
            return default

        sellable = packaging.sellable_levels()
        return sellable[0] if sellable else None
