"""
documents.py
Scannable payment codes (qrcode) and PDF payment receipts (reportlab).
"""

from __future__ import annotations

import base64
from io import BytesIO

import qrcode
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as _pdf_canvas


def render_qr_png(payload: str, box_size: int = 6, border: int = 1) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def render_qr_data_url(payload: str) -> str:
    """PNG QR code as a data: URL, ready for an <img src>."""
    encoded = base64.b64encode(render_qr_png(payload)).decode('ascii')
    return f"data:image/png;base64,{encoded}"


def receipt_number(member_id: int, entry_id: int) -> str:
    return f"RCP-{member_id:06d}-{entry_id:05d}"


def build_receipt_pdf(member, entry, gym_name: str, currency: str = 'INR',
                      plan_name: str | None = None) -> tuple[bytes, str]:
    """Render the receipt for one ledger entry. Returns (pdf_bytes, filename)."""
    buf = BytesIO()
    page_w, page_h = A4
    c = _pdf_canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"{gym_name} Membership Receipt")

    # Header band
    c.setFillColor(HexColor("#1F2937"))
    c.rect(0, page_h - 120, page_w, 120, fill=1, stroke=0)
    c.setFillColor(HexColor("#FFFFFF"))
    c.setFont("Helvetica-Bold", 26)
    c.drawString(50, page_h - 60, gym_name.upper())
    c.setFont("Helvetica-Bold", 16)
    c.drawRightString(page_w - 50, page_h - 95, "MEMBERSHIP RECEIPT")

    number = receipt_number(member.id, entry.id)
    c.setFillColor(HexColor("#1F2937"))
    c.setFont("Helvetica", 10)
    c.drawString(50, page_h - 150, f"Receipt No: {number}")
    c.drawString(50, page_h - 165, f"Date: {entry.date.strftime('%d %B %Y')}")

    def section(title: str, rows: list[tuple[str, str]], top: float) -> float:
        c.setFillColor(HexColor("#F59E0B"))
        c.setFont("Helvetica-Bold", 13)
        c.drawString(50, top, title)
        y = top - 25
        for label, value in rows:
            c.setFillColor(HexColor("#6B7280"))
            c.setFont("Helvetica", 11)
            c.drawString(50, y, label)
            c.setFillColor(HexColor("#1F2937"))
            c.setFont("Helvetica-Bold", 11)
            c.drawString(200, y, value or '-')
            y -= 20
        return y - 15

    y = section("MEMBER INFORMATION", [
        ("Member Name:", member.name),
        ("Email:", member.email),
        ("Phone:", member.phone or ''),
        ("Member ID:", f"{member.id:06d}"),
    ], page_h - 200)

    y = section("PAYMENT DETAILS", [
        ("Type:", entry.type.capitalize()),
        ("Plan:", plan_name or entry.plan),
        ("Duration:", f"{entry.duration} month(s)"),
        ("Period:", f"{member.start_date.isoformat()} to {member.end_date.isoformat()}"),
        ("Payment Mode:", entry.payment_mode.capitalize()),
        ("Transaction:", entry.transaction_id or '-'),
        ("Status:", entry.payment_status.capitalize()),
    ], y)

    # Amount box
    c.setFillColor(HexColor("#F3F4F6"))
    c.roundRect(50, y - 50, page_w - 100, 50, 8, fill=1, stroke=0)
    c.setFillColor(HexColor("#1F2937"))
    c.setFont("Helvetica-Bold", 16)
    c.drawString(65, y - 32, "Total Paid")
    c.drawRightString(page_w - 65, y - 32, f"{currency} {entry.amount:,}")

    # Verification code
    qr = ImageReader(BytesIO(render_qr_png(number, box_size=4)))
    c.drawImage(qr, page_w - 150, 60, width=90, height=90)
    c.setFillColor(HexColor("#6B7280"))
    c.setFont("Helvetica-Oblique", 9)
    c.drawString(50, 70, "This is a computer generated receipt and does not require a signature.")

    c.showPage()
    c.save()
    buf.seek(0)
    return buf.read(), f"receipt_{number}.pdf"
