"""Garment layer model: categories, slot capacities and wearing order."""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from pydantic import BaseModel, Field, model_validator

from ..errors import SlotIndexError
from .image_ref import ImageRef


class Category(str, Enum):
    """Garment slot category."""
    OUTER = "outer"
    INNER = "inner"
    BOTTOMS = "bottoms"


CAPACITIES: dict[Category, int] = {
    Category.OUTER: 2,
    Category.INNER: 3,
    Category.BOTTOMS: 2,
}


@dataclass(frozen=True)
class LayerPosition:
    """Where one slot sits in the wearing order (1 = innermost)."""
    category: Category
    index: int
    layer: int
    label: str


# Innermost to outermost. Composition must follow this order, never category grouping.
_LAYER_TABLE: tuple[LayerPosition, ...] = (
    LayerPosition(Category.BOTTOMS, 0, 1, "bottoms layer 1"),
    LayerPosition(Category.BOTTOMS, 1, 2, "bottoms layer 2"),
    LayerPosition(Category.INNER, 2, 3, "base inner"),
    LayerPosition(Category.INNER, 1, 4, "main top"),
    LayerPosition(Category.INNER, 0, 5, "mid layer"),
    LayerPosition(Category.OUTER, 1, 6, "light outer"),
    LayerPosition(Category.OUTER, 0, 7, "heavy outer"),
)

_BY_SLOT: dict[tuple[Category, int], LayerPosition] = {
    (p.category, p.index): p for p in _LAYER_TABLE
}


def _check_slot(category: Category | str, index: int) -> tuple[Category, int]:
    try:
        category = Category(category)
    except ValueError:
        raise SlotIndexError(f"Unknown category: {category!r}") from None
    capacity = CAPACITIES[category]
    if not isinstance(index, int) or index < 0 or index >= capacity:
        raise SlotIndexError(
            f"Invalid index: {category.value}[{index}] (max: {capacity - 1})"
        )
    return category, index


def capacity_of(category: Category | str) -> int:
    """Number of slots in a category."""
    try:
        return CAPACITIES[Category(category)]
    except ValueError:
        raise SlotIndexError(f"Unknown category: {category!r}") from None


def layer_index_of(category: Category | str, index: int) -> int:
    """Draw layer (1..7) of a slot, innermost first."""
    return _BY_SLOT[_check_slot(category, index)].layer


def layer_label(category: Category | str, index: int) -> str:
    return _BY_SLOT[_check_slot(category, index)].label


def canonical_order() -> list[tuple[Category, int]]:
    """All slots ascending by draw layer."""
    return [(p.category, p.index) for p in sorted(_LAYER_TABLE, key=lambda p: p.layer)]


@dataclass(frozen=True)
class GarmentSlot:
    """One of the six garment slots the detector looks for."""
    key: str
    category: Category
    index: int
    name: str
    description: str


# bottoms[1] is only ever filled by the user
DETECTION_SLOTS: tuple[GarmentSlot, ...] = (
    GarmentSlot(
        "heavy_outer", Category.OUTER, 0, "heavy outer",
        "Heavy outerwear: coat, trench coat, padded jacket, puffer, shearling, down jacket",
    ),
    GarmentSlot(
        "light_outer", Category.OUTER, 1, "light outer",
        "Light outerwear: blazer, jacket, denim jacket, blouson, trucker jacket, leather jacket",
    ),
    GarmentSlot(
        "mid_layer", Category.INNER, 0, "mid layer",
        "Mid layer: cardigan, zip-up, hooded zip-up, open-front knit",
    ),
    GarmentSlot(
        "main_top", Category.INNER, 1, "main top",
        "Main top: knit, sweater, hoodie, pullover, sweatshirt, vest",
    ),
    GarmentSlot(
        "base_inner", Category.INNER, 2, "base inner",
        "Base inner: t-shirt, shirt, button-down, turtleneck, short or long sleeve tee",
    ),
    GarmentSlot(
        "bottoms", Category.BOTTOMS, 0, "bottoms",
        "Bottoms: pants, jeans, slacks, skirt, shorts",
    ),
)


class Outfit(BaseModel):
    """Three categories of optional garment images, index-addressed."""

    outer: list[ImageRef | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.OUTER])
    inner: list[ImageRef | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.INNER])
    bottoms: list[ImageRef | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.BOTTOMS])

    @model_validator(mode="after")
    def _check_capacities(self) -> "Outfit":
        for category, capacity in CAPACITIES.items():
            slots = getattr(self, category.value)
            if len(slots) != capacity:
                raise ValueError(
                    f"{category.value} must have {capacity} slots, got {len(slots)}"
                )
        return self

    def get(self, category: Category | str, index: int) -> ImageRef | None:
        category, index = _check_slot(category, index)
        return getattr(self, category.value)[index]

    def set(self, category: Category | str, index: int, image: ImageRef | None) -> None:
        category, index = _check_slot(category, index)
        getattr(self, category.value)[index] = image

    def filled(self) -> Iterator[tuple[Category, int, ImageRef]]:
        """Populated slots in canonical (wearing) order."""
        for category, index in canonical_order():
            image = self.get(category, index)
            if image is not None:
                yield category, index, image

    def is_empty(self) -> bool:
        return next(self.filled(), None) is None


def effective_outfit(user_slots: Outfit, baseline: Outfit) -> Outfit:
    """Merge user overrides onto the detected baseline.

    A user slot wins whenever it is set; otherwise the baseline garment for
    the same slot is used.
    """
    merged = Outfit()
    for category, index in canonical_order():
        override = user_slots.get(category, index)
        merged.set(category, index, override if override is not None else baseline.get(category, index))
    return merged
