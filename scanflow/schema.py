from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Optional


def new_region_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Region:
    """Named extraction field, stored as percentages of the image box."""

    name: str
    x: float
    y: float
    width: float
    height: float
    id: str = field(default_factory=new_region_id)

    def as_prompt_dict(self) -> dict[str, float | str]:
        return {
            "name": self.name,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }


def dedupe_names(names: Iterable[str], *, fallback: str = "Field") -> List[str]:
    """
    Make field names unique, suffixing repeats as "Name (2)", "Name (3)".

    Blank names become "<fallback> N" using their 1-based position.
    """
    unique: List[str] = []
    counts: Dict[str, int] = {}
    for i, raw in enumerate(names):
        name = (raw or "").strip() or f"{fallback} {i + 1}"
        if name not in counts:
            counts[name] = 1
            unique.append(name)
            continue
        counts[name] += 1
        candidate = f"{name} ({counts[name]})"
        while candidate in counts:
            counts[name] += 1
            candidate = f"{name} ({counts[name]})"
        counts[candidate] = 1
        unique.append(candidate)
    return unique


class FieldRegistry:
    """
    Ordered set of regions shared by every file in a batch.

    Iteration order is the column order used for prompts, exports and
    spreadsheet rows. Names are unique within the registry.
    """

    def __init__(self, regions: Iterable[Region] = ()):
        self._regions: Dict[str, Region] = {}
        self.active_id: Optional[str] = None
        for region in regions:
            self.add(region)

    def __len__(self) -> int:
        return len(self._regions)

    def __iter__(self) -> Iterator[Region]:
        return iter(list(self._regions.values()))

    def __contains__(self, region_id: object) -> bool:
        return region_id in self._regions

    def get(self, region_id: str) -> Region:
        try:
            return self._regions[region_id]
        except KeyError:
            raise KeyError(f"Unknown region: {region_id}") from None

    def names(self) -> List[str]:
        return [r.name for r in self._regions.values()]

    def has_name(self, name: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(r.name == name and r.id != exclude_id for r in self._regions.values())

    def next_default_name(self) -> str:
        n = len(self._regions) + 1
        while self.has_name(f"Field {n}"):
            n += 1
        return f"Field {n}"

    def add(self, region: Region) -> Region:
        if region.id in self._regions:
            raise ValueError(f"Region id already registered: {region.id}")
        if self.has_name(region.name):
            raise ValueError(f"Field name already in use: {region.name!r}")
        self._regions[region.id] = region
        return region

    def select(self, region_id: str) -> Region:
        region = self.get(region_id)
        self.active_id = region.id
        return region

    @property
    def active(self) -> Optional[Region]:
        if self.active_id is None:
            return None
        return self._regions.get(self.active_id)

    def rename(self, region_id: str, name: str) -> Region:
        region = self.get(region_id)
        name = name.strip()
        if not name:
            raise ValueError("Field name cannot be empty")
        if self.has_name(name, exclude_id=region_id):
            raise ValueError(f"Field name already in use: {name!r}")
        region.name = name
        return region

    def delete(self, region_id: str) -> None:
        self.get(region_id)
        del self._regions[region_id]
        if self.active_id == region_id:
            self.active_id = None

    def replace(self, regions: Iterable[Region]) -> None:
        """Swap the whole registry (e.g. auto-detection); the first region becomes active."""
        regions = list(regions)
        names = dedupe_names([r.name for r in regions])
        self._regions = {}
        for region, name in zip(regions, names):
            self.add(replace(region, name=name))
        first = next(iter(self._regions), None)
        self.active_id = first

    def snapshot(self) -> List[Region]:
        """Detached copies, safe to hand to a batch run while the registry keeps changing."""
        return [replace(r) for r in self._regions.values()]
