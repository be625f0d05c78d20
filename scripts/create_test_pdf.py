#!/usr/bin/env python3
"""
Generate a small offering-memorandum style PDF for manual ingestion runs.
Page 1: narrative text, page 2: rent roll table, page 3: scanned (image-only) summary.
"""

import io
import os
import sys

from PIL import Image, ImageDraw
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Image as ReportLabImage
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

NARRATIVE = (
    "The Property is a garden-style multifamily community located within walking distance "
    "of the regional employment corridor. Built in stages, the asset benefits from "
    "stable occupancy, recently renovated interiors and a diversified tenant base. "
    "Management has implemented a value-add program covering kitchens, flooring and "
    "common areas, and the Sponsor expects continued rent growth as renovated units turn. "
)

RENT_ROLL = [
    ["Unit Type", "Units", "Avg SF", "In-Place Rent", "Market Rent"],
    ["1 Bed / 1 Bath", "48", "712", "$1,245", "$1,325"],
    ["2 Bed / 1 Bath", "36", "934", "$1,480", "$1,560"],
    ["2 Bed / 2 Bath", "40", "1,028", "$1,610", "$1,695"],
    ["3 Bed / 2 Bath", "16", "1,245", "$1,890", "$1,975"],
    ["Total / Avg", "140", "921", "$1,509", "$1,589"],
]

SCANNED_LINES = [
    "FINANCIAL SUMMARY",
    "Asking Price        $18,500,000",
    "Net Operating Income   $1,202,500",
    "Cap Rate            6.50%",
    "Occupancy           95.7%",
]


def _scanned_page_image() -> Image.Image:
    img = Image.new("RGB", (1275, 900), color="white")
    draw = ImageDraw.Draw(img)
    for i, line in enumerate(SCANNED_LINES):
        draw.text((80, 80 + i * 60), line, fill="black")
    return img


def build_sample_pdf() -> bytes:
    """Return the sample memorandum as PDF bytes."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter)
    styles = getSampleStyleSheet()
    story = []

    # 1. Narrative
    story.append(Paragraph("Investment Overview", styles["Heading1"]))
    for _ in range(4):
        story.append(Paragraph(NARRATIVE, styles["Normal"]))
        story.append(Spacer(1, 12))
    story.append(PageBreak())

    # 2. Rent roll
    story.append(Paragraph("Rent Roll", styles["Heading1"]))
    table = Table(RENT_ROLL, colWidths=[120, 60, 70, 100, 100])
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ]))
    story.append(table)
    story.append(PageBreak())

    # 3. Scanned summary (no text layer)
    png = io.BytesIO()
    _scanned_page_image().save(png, format="PNG")
    png.seek(0)
    story.append(ReportLabImage(png, width=510, height=360))

    doc.build(story)
    return buf.getvalue()


def create_test_pdf(filename: str = "data/test_input/offering_memorandum.pdf") -> str:
    os.makedirs(os.path.dirname(filename) or ".", exist_ok=True)
    with open(filename, "wb") as f:
        f.write(build_sample_pdf())
    print(f"Test PDF created at: {filename}")
    return filename


if __name__ == "__main__":
    create_test_pdf(*sys.argv[1:2])
