from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, field_validator

from .schema import FieldRegistry, Region


class RegionModel(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    x: float = Field(..., ge=0, le=100)
    y: float = Field(..., ge=0, le=100)
    width: float = Field(..., gt=0, le=100)
    height: float = Field(..., gt=0, le=100)


class MappingTemplate(BaseModel):
    """A saved field layout plus extraction hints, reusable across sessions."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    regions: List[RegionModel]
    instructions: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("regions")
    @classmethod
    def validate_unique_names(cls, regions: List[RegionModel]) -> List[RegionModel]:
        names = [r.name for r in regions]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate field names: {', '.join(duplicates)}")
        return regions

    @classmethod
    def from_registry(cls, name: str, registry: FieldRegistry, instructions: str = "") -> "MappingTemplate":
        return cls(
            name=name,
            regions=[
                RegionModel(id=r.id, name=r.name, x=r.x, y=r.y, width=r.width, height=r.height)
                for r in registry
            ],
            instructions=instructions,
        )

    def to_registry(self) -> FieldRegistry:
        return FieldRegistry(
            Region(id=r.id, name=r.name, x=r.x, y=r.y, width=r.width, height=r.height)
            for r in self.regions
        )

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "MappingTemplate":
        return cls.model_validate_json(path.read_text(encoding="utf-8"))
