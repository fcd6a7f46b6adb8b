from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_ai import Agent, BinaryContent
from pydantic_ai.models import Model

from .preprocess import PageImage
from .schema import Region

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai:gpt-4o"
DEFAULT_DETECTION_FIELDS = "Invoice Number, Date, Total, Vendor Name, Due Date, Tax"


class ExtractionError(RuntimeError):
    """The extraction model returned something unusable."""


class ExtractedFieldModel(BaseModel):
    """LLM-facing value for a single field."""

    name: str
    value: Optional[str] = ""

    @field_validator("value")
    @classmethod
    def normalize_value(cls, value: Optional[str]) -> str:
        return (value or "").strip()


class ExtractionResponse(BaseModel):
    fields: List[ExtractedFieldModel]


class DetectedRegionModel(BaseModel):
    """LLM-facing bounding box, in percent of the page."""

    name: str = Field(..., description="Short, unique field name")
    x: float = Field(..., description="Left edge, percent of image width (0-100)")
    y: float = Field(..., description="Top edge, percent of image height (0-100)")
    width: float = Field(..., description="Width, percent of image width")
    height: float = Field(..., description="Height, percent of image height")

    @field_validator("x", "y", "width", "height")
    @classmethod
    def clamp_percent(cls, value: float) -> float:
        return max(0.0, min(float(value), 100.0))

    @model_validator(mode="after")
    def keep_inside_page(self) -> "DetectedRegionModel":
        self.width = min(self.width, 100.0 - self.x)
        self.height = min(self.height, 100.0 - self.y)
        return self


class DetectionResponse(BaseModel):
    fields: List[DetectedRegionModel]


def _image_input(image: PageImage) -> BinaryContent:
    return BinaryContent(data=image.data, media_type=image.media_type)


class ExtractionAgent:
    """
    Vision LLM agent that reads the text inside each region of one page.

    Returns a value for every requested field name; fields the model left out
    come back as empty strings.
    """

    def __init__(self, model: str | Model = DEFAULT_MODEL):
        self.model = model
        self._agent: Optional[Agent[None, ExtractionResponse]] = None

    @property
    def agent(self) -> Agent[None, ExtractionResponse]:
        if self._agent is None:
            self._agent = Agent(
                model=self.model,
                output_type=ExtractionResponse,
                system_prompt=self._system_prompt(),
            )
        return self._agent

    def _system_prompt(self) -> str:
        return (
            "You are a careful OCR assistant. You receive a document image and a list of "
            "named rectangles given as percentages of the image width and height. "
            "Read only the text inside each rectangle. "
            "Return exactly one entry per field name, using the names verbatim. "
            "If a rectangle is empty or unreadable, return an empty string. Do not invent data."
        )

    def build_prompt(self, regions: Sequence[Region], hints: Optional[str] = None) -> str:
        lines = [
            f'- Field Name: "{r.name}". Location: x={r.x:g}%, y={r.y:g}%, '
            f"width={r.width:g}%, height={r.height:g}%"
            for r in regions
        ]
        parts = ["Extract text from the following regions of this document:", "\n".join(lines)]
        if hints:
            parts.append(f"SPECIAL USER INSTRUCTIONS: {hints}")
        return "\n\n".join(parts)

    async def extract(
        self,
        image: PageImage,
        regions: Sequence[Region],
        hints: Optional[str] = None,
    ) -> dict[str, str]:
        prompt = self.build_prompt(regions, hints)
        result = await self.agent.run([prompt, _image_input(image)])
        response = (
            result.output
            if isinstance(result.output, ExtractionResponse)
            else ExtractionResponse.model_validate(result.output)
        )
        return self._align(response, regions)

    def _align(self, response: ExtractionResponse, regions: Sequence[Region]) -> dict[str, str]:
        wanted = [r.name for r in regions]
        returned: dict[str, str] = {}
        for item in response.fields:
            if item.name not in wanted:
                logger.debug("Dropping unrequested field %r from model output", item.name)
                continue
            returned.setdefault(item.name, item.value or "")
        if wanted and not returned and response.fields:
            raise ExtractionError("Model output matched none of the requested fields")
        return {name: returned.get(name, "") for name in wanted}


class RegionDetectionAgent:
    """
    Vision LLM agent that proposes field rectangles for a sample page.

    Used to seed an empty field registry from the first uploaded document.
    """

    def __init__(self, model: str | Model = DEFAULT_MODEL):
        self.model = model
        self._agent: Optional[Agent[None, DetectionResponse]] = None

    @property
    def agent(self) -> Agent[None, DetectionResponse]:
        if self._agent is None:
            self._agent = Agent(
                model=self.model,
                output_type=DetectionResponse,
                system_prompt=self._system_prompt(),
            )
        return self._agent

    def _system_prompt(self) -> str:
        return (
            "You analyze document layouts and identify key data fields for structured extraction. "
            "For each field provide a short, unique name and a bounding box given as percentages "
            "(0-100) of the image width and height: x, y, width, height. "
            "Boxes must stay inside the page. Output only fields that are visible on the page."
        )

    def build_prompt(self, hints: Optional[str] = None) -> str:
        if hints:
            return (
                "Analyze this document and identify key data fields.\n\n"
                f'USER PRIORITIES & HINTS: "{hints}"\n\n'
                "Prioritize locating the areas named in the hints accurately."
            )
        return (
            "Analyze this document and identify key data fields.\n\n"
            f"Standard fields to look for: {DEFAULT_DETECTION_FIELDS}."
        )

    async def detect(self, image: PageImage, hints: Optional[str] = None) -> List[Region]:
        result = await self.agent.run([self.build_prompt(hints), _image_input(image)])
        response: Any = result.output
        if not isinstance(response, DetectionResponse):
            response = DetectionResponse.model_validate(response)
        return [
            Region(name=d.name.strip(), x=d.x, y=d.y, width=d.width, height=d.height)
            for d in response.fields
            if d.width > 0 and d.height > 0
        ]
