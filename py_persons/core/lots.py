"""
Lot generation for the city map.

Every zone letter of the base city layout (``R`` residential, ``C``
commercial, ``I`` industrial) starts as a one-tile lot. Lots then grow to the
right and downward by absorbing neighboring lots of the same zone, and each
grown lot whose size and zone match a filler receives an ASCII room layout
(and sometimes furniture such as a vending machine). The filled lots are
stamped onto the base layout with ``overlay_lots``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .city_map import NEWLINE, Lot, TileGeometry, TileMap, overlay_lots

logger = structlog.get_logger()

# A lot grows by at most this many rows/columns
MAX_LOT_GROWTH = 4


class LotZone(str, Enum):
    RESIDENTIAL = "RESIDENTIAL"
    COMMERCIAL = "COMMERCIAL"
    INDUSTRIAL = "INDUSTRIAL"


ZONE_LETTERS: Dict[str, LotZone] = {
    "R": LotZone.RESIDENTIAL,
    "C": LotZone.COMMERCIAL,
    "I": LotZone.INDUSTRIAL,
}


@dataclass
class LotObject:
    """Furniture placed inside a lot when it is filled."""
    id: str
    x: float
    y: float
    object_type: str
    state: Dict = field(default_factory=dict)


@dataclass
class LotFiller:
    """Room layout for lots of one zone and size, in world units."""
    zone: LotZone
    width: float
    height: float
    format: str
    objects: Callable[[Lot], List[LotObject]] = lambda lot: []


def _vending_machine(lot: Lot) -> List[LotObject]:
    return [LotObject(
        id=f"lot-{lot.x:.0f}-{lot.y:.0f}-vending-machine",
        x=lot.x + lot.width / 2,
        y=lot.y + lot.height / 2,
        object_type="VENDING_MACHINE",
        state={"inventory": [
            {"price": 3000, "object_type": "CAR"},
            {"price": 10, "object_type": "BOX"},
        ]},
    )]


LOT_FILLERS: List[LotFiller] = [
    LotFiller(
        zone=LotZone.RESIDENTIAL, width=2500, height=1200,
        format="  E  \n"
               "OHHO \n"
               "OHOH \n"
               " E   ",
    ),
    LotFiller(
        zone=LotZone.RESIDENTIAL, width=2500, height=900,
        format="OE EO\n"
               "HH HH\n"
               "OE EO",
    ),
    LotFiller(
        zone=LotZone.COMMERCIAL, width=2500, height=1200,
        format="  E  \n"
               "OHHHH\n"
               "OHHHH\n"
               "  E  ",
        objects=_vending_machine,
    ),
    LotFiller(
        zone=LotZone.COMMERCIAL, width=2500, height=900,
        format="  E  \n"
               "OHHHO\n"
               "  E  ",
    ),
]


def fill_lot(lot: Lot, fillers: List[LotFiller] = LOT_FILLERS) -> List[LotObject]:
    """
    Give a lot the rooms of the filler matching its zone and size.

    Lots without a matching filler are left empty.

    Returns:
        Objects placed in the lot
    """
    for filler in fillers:
        if (filler.zone.value == lot.zone and filler.width == lot.width
                and filler.height == lot.height):
            lot.format = filler.format
            return filler.objects(lot)
    return []


def _unit_lots(base_format: str, geometry: TileGeometry,
               city_id: str) -> List[Tuple[Tuple[int, int], Lot]]:
    lots = []
    for row, line in enumerate(NEWLINE.split(base_format)):
        for column, letter in enumerate(line):
            zone = ZONE_LETTERS.get(letter)
            if zone is None:
                continue
            x = geometry.offset.x + column * geometry.tile_width
            y = geometry.offset.y + row * geometry.tile_height
            lot = Lot(
                x=x,
                y=y,
                width=geometry.tile_width,
                height=geometry.tile_height,
                id=f"{city_id}-{zone.value}({x:.0f},{y:.0f})",
                zone=zone.value,
            )
            lots.append(((column, row), lot))
    return lots


def generate_lots(base_format: str, geometry: TileGeometry = TileGeometry(),
                  city_id: str = "city1",
                  fillers: List[LotFiller] = LOT_FILLERS) -> Tuple[List[Lot], List[LotObject]]:
    """
    Build the lots of a city layout and fill them with rooms.

    Lots are visited row by row. A lot absorbs the column to its right when
    every tile there holds a lot of its zone, the row below under the same
    condition, or both plus the corner tile when all three are filled.

    Args:
        base_format: ASCII city layout of roads and zone letters
        geometry: Placement of the city in world space
        city_id: Prefix of the generated lot ids
        fillers: Room layouts by zone and size

    Returns:
        The remaining lots and the objects placed inside them
    """
    unit_lots = _unit_lots(base_format, geometry, city_id)
    # tile position -> lot anchored or absorbed there and not yet merged away
    free: Dict[Tuple[int, int], Lot] = dict(unit_lots)
    merged: List[Lot] = []

    for (column, row), lot in unit_lots:
        if free.get((column, row)) is not lot:
            continue

        def same_zone(position):
            other = free.get(position)
            return other is not None and other is not lot and other.zone == lot.zone

        for _ in range(MAX_LOT_GROWTH):
            width = round(lot.width / geometry.tile_width)
            height = round(lot.height / geometry.tile_height)
            right = [(column + width, row + i) for i in range(height)]
            bottom = [(column + i, row + height) for i in range(width)]
            corner = (column + width, row + height)

            right_filled = all(same_zone(p) for p in right)
            bottom_filled = all(same_zone(p) for p in bottom)

            if right_filled and bottom_filled and same_zone(corner):
                absorbed = right + bottom + [corner]
                lot.width += geometry.tile_width
                lot.height += geometry.tile_height
            elif right_filled:
                absorbed = right
                lot.width += geometry.tile_width
            elif bottom_filled:
                absorbed = bottom
                lot.height += geometry.tile_height
            else:
                break

            for position in absorbed:
                del free[position]

        merged.append(lot)

    objects: List[LotObject] = []
    for lot in merged:
        objects.extend(fill_lot(lot, fillers))

    logger.info("City lots generated", lots=len(merged),
                filled=sum(1 for lot in merged if lot.format), objects=len(objects))
    return merged, objects


def build_city_map(base_format: str, geometry: TileGeometry = TileGeometry(),
                   city_id: str = "city1") -> Tuple[TileMap, List[Lot], List[LotObject]]:
    """Generate the lots of a layout and stamp their rooms onto it."""
    lots, objects = generate_lots(base_format, geometry, city_id)
    return overlay_lots(base_format, lots, geometry), lots, objects


def lot_entrance(lot: Lot, geometry: TileGeometry = TileGeometry()) -> Optional[Tuple[float, float]]:
    """World position of the first door of a filled lot, None when it has no rooms."""
    if not lot.format:
        return None
    for row_index, line in enumerate(NEWLINE.split(lot.format)):
        column_index = line.find("E")
        if column_index >= 0:
            return (lot.x + (column_index + 0.5) * geometry.tile_width,
                    lot.y + (row_index + 0.5) * geometry.tile_height)
    return None
