from __future__ import annotations

import asyncio
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import fitz  # PyMuPDF
from PIL import Image

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff"}
# Formats vision models accept as-is; everything else is re-encoded to PNG.
_PASSTHROUGH = {"PNG": "image/png", "JPEG": "image/jpeg", "WEBP": "image/webp"}


@dataclass(frozen=True)
class PageImage:
    """Encoded raster of the page the fields are drawn on."""

    data: bytes
    media_type: str
    width: int
    height: int


@dataclass
class DocumentPreprocessor:
    """
    Turns an uploaded file into the single page image used for extraction.

    PDFs are rendered (first page) with PyMuPDF; raster images are read with Pillow.
    """

    dpi: int = 150

    def load(self, file_path: Path) -> PageImage:
        suffix = file_path.suffix.lower()
        if suffix == ".pdf":
            return self._render_pdf(file_path)
        if suffix in IMAGE_SUFFIXES:
            return self._read_image(file_path.read_bytes())
        raise ValueError(f"Unsupported file type: {suffix}")

    async def load_async(self, file_path: Path) -> PageImage:
        return await asyncio.to_thread(self.load, file_path)

    def _render_pdf(self, file_path: Path) -> PageImage:
        with fitz.open(file_path) as doc:
            if doc.page_count == 0:
                raise ValueError(f"PDF has no pages: {file_path.name}")
            pix = doc.load_page(0).get_pixmap(dpi=self.dpi)
            img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
        return _encode_png(img)

    def _read_image(self, raw: bytes) -> PageImage:
        with Image.open(BytesIO(raw)) as img:
            media_type = _PASSTHROUGH.get(img.format or "")
            if media_type:
                return PageImage(data=raw, media_type=media_type, width=img.width, height=img.height)
            return _encode_png(img.convert("RGB"))


def _encode_png(img: Image.Image) -> PageImage:
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return PageImage(data=buffer.getvalue(), media_type="image/png", width=img.width, height=img.height)
