from io import BytesIO

from reportlab.lib.pagesizes import LETTER
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

MARGIN = 50
LINE = 16


def _money(value) -> str:
    try:
        return f"${float(value):,.0f}"
    except (TypeError, ValueError):
        return "N/A"


def report_lines(report: dict, deal: dict) -> list[tuple[str, str]]:
    """(font, text) pairs in print order."""
    preview = deal.get("preview") or {}
    lines = [
        ("Helvetica-Bold", "DEAL SHIELD REPORT"),
        ("Helvetica", ""),
        ("Helvetica", f"Vehicle: {preview.get('vehicle_name', 'Unknown Vehicle')}"),
        ("Helvetica", f"Quoted price: {preview.get('price', 'N/A')}   ZIP: {deal.get('zip_code') or 'N/A'}"),
        ("Helvetica", f"Score: {report['score']}/100 ({report['category']})"),
    ]
    target = report.get("target_otd_range")
    if target:
        lines.append(("Helvetica", f"Target out-the-door: {_money(target.get('min'))} - {_money(target.get('max'))}"))
    if report.get("summary"):
        lines += [("Helvetica", ""), ("Helvetica-Bold", "Summary"), ("Helvetica", report["summary"])]

    lines += [("Helvetica", ""), ("Helvetica-Bold", "Red flags")]
    for i, flag in enumerate(report.get("red_flags") or [], 1):
        lines.append(("Helvetica-Bold", f"{i}. {flag['name']} [{flag['severity']}] - save up to {_money(flag['estimated_savings'])}"))
        if flag.get("description"):
            lines.append(("Helvetica", flag["description"]))
        if flag.get("suggested_action"):
            lines.append(("Helvetica-Oblique", f"Say: {flag['suggested_action']}"))

    scripts = report.get("negotiation_script") or {}
    for title, key in (("Email script", "email_text"), ("In-person script", "in_person_text")):
        if scripts.get(key):
            lines += [("Helvetica", ""), ("Helvetica-Bold", title)]
            lines += [("Helvetica", part) for part in scripts[key].splitlines()]
    return lines


def render_report_pdf(report: dict, deal: dict) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=LETTER)
    width, height = LETTER
    max_width = width - 2 * MARGIN

    y = height - 60
    for font, text in report_lines(report, deal):
        size = 16 if text == "DEAL SHIELD REPORT" else 11
        wrapped = simpleSplit(text, font, size, max_width) or [""]
        for chunk in wrapped:
            c.setFont(font, size)
            c.drawString(MARGIN, y, chunk)
            y -= LINE + (12 if size == 16 else 0)
            if y < 80:
                c.showPage()
                y = height - 60

    c.showPage()
    c.save()
    return buf.getvalue()
