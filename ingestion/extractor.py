"""
Page extractor - structural text first, OCR fallback for sparse or number-dense pages.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from shared import OCRLimiter

from .errors import ExtractionError, ExtractionTimeoutError
from .models import ExtractionOptions, Page, TextItem
from .ocr import OCREngine, Renderer, normalize_ocr_text
from .parser import PageSource, build_structural_text
from .structure import digit_ratio

logger = logging.getLogger(__name__)

PDF_POINTS_PER_INCH = 72

# Structural text accepted without OCR
STRUCTURAL_CONFIDENCE = 1.0
# OCR needed but failed or unavailable
LOW_CONFIDENCE = 0.2

_NON_ALPHA_RE = re.compile(r"[^A-Za-z0-9$€£.,:%&()/+\- \n]")


def alpha_text(text: str) -> str:
    """Text with everything outside letters, digits, currency and numeric punctuation removed."""
    return _NON_ALPHA_RE.sub("", text)


def needs_ocr(text: str, options: ExtractionOptions) -> bool:
    """
    True when structural text is too sparse or too number-dense to trust.

    Accept structural text iff len(alpha) >= trigger AND digit ratio < threshold.
    """
    if len(alpha_text(text)) < options.ocr_trigger_chars:
        return True
    return digit_ratio(text) >= options.digit_ratio_threshold


def merge_texts(structural: str, ocr: str) -> str:
    """Structural text followed by OCR text."""
    return f"{structural}\n{ocr}".strip()


class PageExtractor:
    """
    Extract one page. Never raises for page-local failures: the page is
    returned with its structural text, low confidence and an error note.
    """

    def __init__(
        self,
        renderer: Optional[Renderer] = None,
        ocr_engine: Optional[OCREngine] = None,
        limiter: Optional[OCRLimiter] = None,
    ):
        self.renderer = renderer
        self.ocr_engine = ocr_engine
        self.limiter = limiter

    @property
    def ocr_available(self) -> bool:
        return self.renderer is not None and self.ocr_engine is not None

    def extract(self, source: PageSource, options: ExtractionOptions) -> Page:
        """
        Extract text for one page.

        Args:
            source: Page words and document handle
            options: OCR trigger thresholds and render settings

        Returns:
            Page with final text, OCR flag, confidence and any error
        """
        structural = build_structural_text(source.items)
        page = Page(
            page_number=source.page_number,
            text=structural.strip(),
            structural_text=structural,
            items=source.items,
            confidence=STRUCTURAL_CONFIDENCE,
        )

        if not needs_ocr(structural, options):
            return page

        if not self.ocr_available:
            logger.debug(f"Page {source.page_number}: OCR needed but unavailable")
            return page.model_copy(update={"confidence": LOW_CONFIDENCE, "error": "ocr unavailable"})

        try:
            ocr_text, ocr_conf, ocr_items = self._run_ocr(source, options)
        except ExtractionTimeoutError as e:
            logger.warning(f"Page {source.page_number}: OCR timed out, keeping structural text ({e})")
            return page.model_copy(update={"confidence": LOW_CONFIDENCE, "error": str(e)})
        except ExtractionError as e:
            logger.warning(f"Page {source.page_number}: OCR failed, keeping structural text ({e})")
            return page.model_copy(update={"confidence": LOW_CONFIDENCE, "error": str(e)})

        return page.model_copy(update={
            "text": merge_texts(structural, ocr_text),
            # Scanned pages take their word positions from OCR.
            "items": source.items or ocr_items,
            "ocr_used": True,
            "confidence": max(0.0, min(1.0, ocr_conf / 100.0)),
        })

    def _run_ocr(self, source: PageSource, options: ExtractionOptions) -> tuple[str, float, list[TextItem]]:
        if self.limiter is not None:
            with self.limiter.limit():
                return self._render_and_recognize(source, options)
        return self._render_and_recognize(source, options)

    def _render_and_recognize(
        self, source: PageSource, options: ExtractionOptions
    ) -> tuple[str, float, list[TextItem]]:
        image = self.renderer.render(source, options.ocr_dpi, timeout=options.ocr_timeout_seconds)
        result = self.ocr_engine.recognize(image, timeout=options.ocr_timeout_seconds)
        return normalize_ocr_text(result.text), result.confidence, to_points(result.items, options.ocr_dpi)


def to_points(items: list[TextItem], dpi: int) -> list[TextItem]:
    """Convert word boxes from image pixels at dpi to PDF points."""
    factor = PDF_POINTS_PER_INCH / dpi
    return [
        item.model_copy(update={
            "x0": item.x0 * factor,
            "x1": item.x1 * factor,
            "top": item.top * factor,
            "bottom": item.bottom * factor,
        })
        for item in items
    ]
