"""
OCR module - page rendering and Tesseract recognition behind small capability interfaces.
Backends are selected from config at startup; "none" disables OCR.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional, Protocol

import pytesseract
from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from PIL import Image, ImageOps, ImageStat
from pytesseract import Output

from .errors import ExtractionError, ExtractionTimeoutError
from .models import OCRResult, TextItem
from .parser import COLUMN_SEPARATOR, PageSource, join_line

logger = logging.getLogger(__name__)

# Characters Tesseract may emit: digits, currency and numeric punctuation, Latin letters.
OCR_WHITELIST = (
    "0123456789$€£.,:%&()/+-"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
)
# --oem 1: LSTM only; --psm 6: assume a uniform block of text
TESSERACT_CONFIG = f"--oem 1 --psm 6 -c tessedit_char_whitelist={OCR_WHITELIST}"

MIN_OCR_DIMENSION = 1000

_COLUMN_GAP_RE = re.compile(r" *\t[ \t]*| {3,}")


class Renderer(Protocol):
    """Produces a raster image of one page."""

    def render(self, page: PageSource, dpi: int, timeout: Optional[float] = None) -> bytes:
        ...


class OCREngine(Protocol):
    """Recognizes text in a raster image."""

    def recognize(self, image: bytes, timeout: Optional[float] = None) -> OCRResult:
        ...


def _normalize_columns(line: str) -> str:
    cells = (re.sub(r" {2,}", " ", cell).strip() for cell in _COLUMN_GAP_RE.split(line))
    return COLUMN_SEPARATOR.join(cell for cell in cells if cell)


def normalize_ocr_text(text: str) -> str:
    """
    Clean raw OCR output.

    - Collapse runs of spaces; tabs and wide gaps become one column separator
    - Isolated "l" -> "1" and "O" -> "0" (alone or between digits)
    - At most two consecutive blank lines
    """
    text = "\n".join(_normalize_columns(line) for line in text.split("\n"))
    text = re.sub(r"(?<=\d)l(?=\d)", "1", text)
    text = re.sub(r"(?<=\d)O(?=\d)", "0", text)
    text = re.sub(r"(?<![A-Za-z0-9])l(?![A-Za-z0-9])", "1", text)
    text = re.sub(r"(?<![A-Za-z0-9])O(?![A-Za-z0-9])", "0", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{4,}", "\n\n\n", text)
    return text.strip()


class PdfPageRenderer:
    """Rasterize a PDF page with pdf2image (poppler)."""

    def render(self, page: PageSource, dpi: int, timeout: Optional[float] = None) -> bytes:
        try:
            images = convert_from_bytes(
                page.pdf_bytes,
                dpi=dpi,
                first_page=page.page_number,
                last_page=page.page_number,
                timeout=timeout,
            )
        except PDFPopplerTimeoutError as e:
            raise ExtractionTimeoutError(
                f"Rendering page {page.page_number} timed out", page_number=page.page_number
            ) from e
        except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError) as e:
            raise ExtractionError(
                f"Rendering page {page.page_number} failed: {e}", page_number=page.page_number
            ) from e

        if not images:
            raise ExtractionError(f"Renderer returned no image for page {page.page_number}",
                                  page_number=page.page_number)

        buf = io.BytesIO()
        images[0].save(buf, format="PNG")
        return buf.getvalue()


class TesseractEngine:
    """
    Tesseract OCR wrapper with preprocessing and optional result cache.
    """

    def __init__(self, lang: str = "eng", cache_dir: Optional[str] = None):
        self.lang = lang
        self.cache_dir = cache_dir
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

    def recognize(self, image: bytes, timeout: Optional[float] = None) -> OCRResult:
        """
        Run OCR on PNG bytes. Uses cache if available.

        Raises:
            ExtractionTimeoutError: Tesseract exceeded timeout
            ExtractionError: Tesseract failed or image unreadable
        """
        image_hash = hashlib.md5(image).hexdigest()
        cached = self._get_cached(image_hash)
        if cached:
            logger.debug(f"OCR cache hit for {image_hash}")
            return cached

        result = self._run_tesseract(image, timeout)
        self._save_cache(image_hash, result)
        return result

    def _preprocess_image_for_ocr(self, image: Image.Image) -> Image.Image:
        """
        Grayscale, upscale small images, auto-contrast, mean-threshold binarize.
        """
        gray = image.convert("L")
        width, height = gray.size

        if width < MIN_OCR_DIMENSION or height < MIN_OCR_DIMENSION:
            scale = max(MIN_OCR_DIMENSION / width, MIN_OCR_DIMENSION / height)
            gray = gray.resize((int(width * scale), int(height * scale)), Image.Resampling.LANCZOS)

        gray = ImageOps.autocontrast(gray)

        threshold = ImageStat.Stat(gray).mean[0]
        return gray.point(lambda p: 255 if p > threshold else 0)

    def _run_tesseract(self, image_bytes: bytes, timeout: Optional[float]) -> OCRResult:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except OSError as e:
            raise ExtractionError(f"Unreadable page image: {e}") from e

        preprocessed = self._preprocess_image_for_ocr(image)

        try:
            ocr_data = pytesseract.image_to_data(
                preprocessed,
                lang=self.lang,
                output_type=Output.DICT,
                config=TESSERACT_CONFIG,
                timeout=timeout or 0,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise ExtractionError(f"Tesseract failed: {e}") from e
        except RuntimeError as e:
            # pytesseract signals its own timeout as a bare RuntimeError
            raise ExtractionTimeoutError(f"Tesseract timed out after {timeout}s") from e

        # Boxes refer to the preprocessed image; map them back to the input size.
        scale = preprocessed.size[0] / image.size[0] if image.size[0] else 1.0

        # Rebuild lines from block/paragraph/line numbering.
        lines: dict[tuple, list[TextItem]] = {}
        confidences: list[float] = []
        for i, word in enumerate(ocr_data["text"]):
            conf = float(ocr_data["conf"][i])
            if not word.strip() or conf < 0:
                continue
            key = (ocr_data["block_num"][i], ocr_data["par_num"][i], ocr_data["line_num"][i])
            left, top = ocr_data["left"][i] / scale, ocr_data["top"][i] / scale
            lines.setdefault(key, []).append(TextItem(
                text=word,
                x0=left,
                x1=left + ocr_data["width"][i] / scale,
                top=top,
                bottom=top + ocr_data["height"][i] / scale,
            ))
            confidences.append(conf)

        text_lines = []
        items: list[TextItem] = []
        prev_block = None
        for key in sorted(lines):
            if prev_block is not None and key[:2] != prev_block:
                text_lines.append("")
            line = sorted(lines[key], key=lambda w: w.x0)
            text_lines.append(join_line(line))
            items.extend(line)
            prev_block = key[:2]

        mean_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return OCRResult(text="\n".join(text_lines), confidence=min(100.0, mean_confidence), items=items)

    def _get_cached(self, image_hash: str) -> Optional[OCRResult]:
        """Load cached OCR result if exists."""
        if not self.cache_dir:
            return None

        cache_file = Path(self.cache_dir) / f"{image_hash}.json"
        if cache_file.exists():
            try:
                with open(cache_file, "r", encoding="utf-8") as f:
                    return OCRResult(**json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring corrupt OCR cache entry {cache_file}: {e}")
        return None

    def _save_cache(self, image_hash: str, result: OCRResult) -> None:
        """Save OCR result to cache."""
        if not self.cache_dir:
            return

        cache_file = Path(self.cache_dir) / f"{image_hash}.json"
        try:
            with open(cache_file, "w", encoding="utf-8") as f:
                json.dump(result.model_dump(), f, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"Failed to cache OCR result: {e}")


def create_ocr_engine(config: dict) -> Optional[OCREngine]:
    """Factory for the OCR engine. Returns None when OCR is disabled."""
    backend = config.get("ocr_backend", "tesseract")

    if backend in (None, "none"):
        logger.info("OCR disabled by config (ocr_backend=none)")
        return None
    if backend == "tesseract":
        return TesseractEngine(
            lang=config.get("ocr_lang", "eng"),
            cache_dir=config.get("ocr_cache_dir"),
        )
    raise ValueError(f"Unknown ocr_backend: {backend}")


def create_renderer(config: dict) -> Optional[Renderer]:
    """Factory for the page renderer. Returns None when OCR is disabled."""
    backend = config.get("render_backend", "pdf2image")

    if config.get("ocr_backend", "tesseract") in (None, "none") or backend in (None, "none"):
        return None
    if backend == "pdf2image":
        return PdfPageRenderer()
    raise ValueError(f"Unknown render_backend: {backend}")
