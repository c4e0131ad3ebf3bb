"""
Consent document rendering.

Produces the PDF that binds the policy text, signature image and consent
metadata to a confirmed payment.
"""
import io
import logging
import re
from datetime import datetime
from typing import List, Optional

from bs4 import BeautifulSoup
from reportlab.lib.colors import black, Color
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from enrollpay.models.enrollment import Enrollment

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = letter
MARGIN = 50
CONTENT_WIDTH = PAGE_WIDTH - MARGIN * 2
FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
BODY_SIZE = 10
HEADER_SIZE = 14
SECTION_SIZE = 12
LINE_FACTOR = 1.4
SIGNATURE_SCALE = 0.4
GREY = Color(0.5, 0.5, 0.5)

_BLOCK_TAGS = ["p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "table", "tr"]
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def strip_html(markup: str) -> str:
    """Convert policy-editor HTML into plain text paragraphs."""
    soup = BeautifulSoup(markup or "", "html.parser")

    # Remove script and style elements
    for element in soup(["script", "style"]):
        element.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for item in soup.find_all("li"):
        item.insert(0, "  - ")
        item.append("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.append("\n\n")

    text = soup.get_text().replace("\xa0", " ")
    text = _EXTRA_BLANK_LINES.sub("\n\n", text)
    return text.strip()


def wrap_text(text: str, max_width: float, font: str = FONT, size: float = BODY_SIZE) -> List[str]:
    """Greedy word wrap by rendered width. Empty strings mark paragraph breaks."""
    lines: List[str] = []
    for paragraph in text.split("\n"):
        if not paragraph.strip():
            lines.append("")
            continue
        current = ""
        for word in paragraph.split(" "):
            candidate = f"{current} {word}" if current else word
            if current and stringWidth(candidate, font, size) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        if current:
            lines.append(current)
    return lines


class _PageWriter:
    def __init__(self, buffer: io.BytesIO):
        self.canvas = canvas.Canvas(buffer, pagesize=letter)
        self.canvas.setTitle("Consent & Payment Authorization")
        self.y = PAGE_HEIGHT - MARGIN

    def _ensure_room(self, needed: float) -> None:
        if self.y < MARGIN + needed:
            self.canvas.showPage()
            self.y = PAGE_HEIGHT - MARGIN

    def gap(self, points: float) -> None:
        self.y -= points

    def line(self, text: str, font: str = FONT, size: float = BODY_SIZE, color=black) -> None:
        self._ensure_room(40)
        self.canvas.setFont(font, size)
        self.canvas.setFillColor(color)
        self.canvas.drawString(MARGIN, self.y, text)
        self.y -= size * LINE_FACTOR

    def section(self, title: str) -> None:
        self.line(title, font=FONT_BOLD, size=SECTION_SIZE)

    def wrapped(self, text: str) -> None:
        line_height = BODY_SIZE * LINE_FACTOR
        for line in wrap_text(text, CONTENT_WIDTH):
            self._ensure_room(20)
            if not line:
                self.y -= line_height * 0.5
                continue
            self.canvas.setFont(FONT, BODY_SIZE)
            self.canvas.setFillColor(black)
            self.canvas.drawString(MARGIN, self.y, line)
            self.y -= line_height

    def image(self, png_bytes: bytes) -> None:
        reader = ImageReader(io.BytesIO(png_bytes))
        img_w, img_h = reader.getSize()
        width = min(img_w * SIGNATURE_SCALE, CONTENT_WIDTH)
        height = img_h * SIGNATURE_SCALE * (width / (img_w * SIGNATURE_SCALE))
        self._ensure_room(max(100, height))
        self.canvas.drawImage(reader, MARGIN, self.y - height, width=width, height=height, mask="auto")
        self.y -= height + 10

    def save(self) -> None:
        self.canvas.save()


def _format_ts(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "N/A"


def render_consent_pdf(
    enrollment: Enrollment,
    terms_text: Optional[str],
    privacy_text: Optional[str],
    signature_png: Optional[bytes],
    payment_date: datetime,
) -> bytes:
    buffer = io.BytesIO()
    page = _PageWriter(buffer)

    page.line("CONSENT & PAYMENT AUTHORIZATION", font=FONT_BOLD, size=HEADER_SIZE)
    page.gap(10)

    page.section("Patient Details")
    page.line(f"Name: {enrollment.patient_name or 'N/A'}")
    page.line(f"Email: {enrollment.patient_email or 'N/A'}")
    page.line(f"Phone: {enrollment.patient_phone or 'N/A'}")
    page.gap(10)

    page.section("Transaction Details")
    page.line(f"Amount: {enrollment.amount_display}")
    page.line(f"Enrollment ID: {enrollment.id}")
    page.line(f"Payment Date: {_format_ts(payment_date)}")
    page.line(f"Terms Version: {enrollment.terms_version}")
    page.line(f"Terms SHA-256: {enrollment.terms_content_hash}")
    page.gap(10)

    if terms_text:
        page.section("Terms of Service")
        page.gap(4)
        page.wrapped(strip_html(terms_text))
        page.gap(10)

    if privacy_text:
        page.section("Privacy Policy")
        page.gap(4)
        page.wrapped(strip_html(privacy_text))
        page.gap(10)

    page.section("Consent Record")
    page.line(f"Terms Accepted At: {_format_ts(enrollment.terms_accepted_at)}")
    page.line(f"Payment Confirmed At: {_format_ts(payment_date)}")
    page.line(f"IP Address: {enrollment.consent_ip or 'unknown'}")
    page.wrapped(f"User Agent: {enrollment.consent_user_agent or 'unknown'}")
    page.gap(10)

    if signature_png:
        page.section("Signature")
        page.gap(4)
        try:
            page.image(signature_png)
        except Exception as e:
            # Corrupt or non-PNG upload; the document is still valid evidence without the image
            logger.error("[CONSENT] Could not embed signature for enrollment %s: %s", enrollment.id, e)
            page.line("[Signature image could not be embedded]")

    page.gap(20)
    page.line(
        "This document was generated automatically at the time of payment confirmation.",
        size=8,
        color=GREY,
    )
    page.save()
    return buffer.getvalue()
