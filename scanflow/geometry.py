from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .schema import FieldRegistry, Region

# Drags at or below this size (percent of the box) are treated as clicks.
MIN_REGION_PERCENT = 1.0


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class BoundingBox:
    """On-screen box of the displayed image, in pointer (client) coordinates."""

    left: float
    top: float
    width: float
    height: float

    def to_percent(self, pointer: Point) -> Point:
        """
        Convert a pointer position into percentages of this box, clamped to [0, 100].

        The box itself is the 100% unit, so the image's native pixel size never enters.
        """
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Bounding box must have a positive size")
        x = (pointer.x - self.left) / self.width * 100.0
        y = (pointer.y - self.top) / self.height * 100.0
        return Point(_clamp(x), _clamp(y))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(value, high))


def normalized_rect(start: Point, end: Point) -> Tuple[float, float, float, float]:
    """(x, y, width, height) of the rectangle spanned by two anchors, in any drag direction."""
    return (
        min(start.x, end.x),
        min(start.y, end.y),
        abs(end.x - start.x),
        abs(end.y - start.y),
    )


def to_pixels(region: Region, image_width: float, image_height: float) -> Tuple[int, int, int, int]:
    """Render a region onto an image of the given size as (x0, y0, x1, y1) pixels."""
    x0 = region.x / 100.0 * image_width
    y0 = region.y / 100.0 * image_height
    x1 = (region.x + region.width) / 100.0 * image_width
    y1 = (region.y + region.height) / 100.0 * image_height
    return (round(x0), round(y0), round(x1), round(y1))


class RegionCanvas:
    """
    Pointer-drag state over a displayed document image.

    Drag anchors are kept in percent space; committing a drag adds a region to
    the shared registry and makes it the active selection.
    """

    def __init__(self, registry: FieldRegistry, box: BoundingBox):
        self.registry = registry
        self.box = box
        self._start: Optional[Point] = None
        self._current: Optional[Point] = None

    @property
    def is_drawing(self) -> bool:
        return self._start is not None

    def resize(self, box: BoundingBox) -> None:
        """Update the displayed box (window resize, zoom); stored regions are unaffected."""
        self.box = box

    def begin_drag(self, pointer: Point) -> Point:
        anchor = self.box.to_percent(pointer)
        self._start = anchor
        self._current = anchor
        return anchor

    def update_drag(self, pointer: Point) -> Optional[Tuple[float, float, float, float]]:
        """Move the live end anchor; returns the preview rectangle, commits nothing."""
        if self._start is None:
            return None
        self._current = self.box.to_percent(pointer)
        return normalized_rect(self._start, self._current)

    def cancel_drag(self) -> None:
        self._start = None
        self._current = None

    def commit_drag(self, pointer: Optional[Point] = None) -> Optional[Region]:
        """
        Finish the drag. Returns the new region, or None when the drag was too
        small to be intentional or no drag was in progress.
        """
        if self._start is None:
            return None
        end = self.box.to_percent(pointer) if pointer is not None else self._current
        start = self._start
        self.cancel_drag()
        if end is None:
            return None

        x, y, width, height = normalized_rect(start, end)
        if not (width > MIN_REGION_PERCENT and height > MIN_REGION_PERCENT):
            return None

        region = Region(
            name=self.registry.next_default_name(),
            x=x,
            y=y,
            width=width,
            height=height,
        )
        self.registry.add(region)
        self.registry.select(region.id)
        return region

    def select_region(self, region_id: str) -> Region:
        return self.registry.select(region_id)

    def rename_region(self, region_id: str, name: str) -> Region:
        return self.registry.rename(region_id, name)

    def delete_region(self, region_id: str) -> None:
        self.registry.delete(region_id)

    def region_at(self, pointer: Point) -> Optional[Region]:
        """Topmost region under the pointer (last drawn wins), for click-to-select."""
        p = self.box.to_percent(pointer)
        hit = None
        for region in self.registry:
            if region.x <= p.x <= region.x + region.width and region.y <= p.y <= region.y + region.height:
                hit = region
        return hit
