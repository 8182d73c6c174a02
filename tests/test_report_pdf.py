import re

from report_pdf import render_report_pdf, report_lines

REPORT = {
    "score": 42,
    "category": "Risky",
    "summary": "Two junk add-ons.",
    "target_otd_range": {"min": 24500, "max": 25200},
    "red_flags": [
        {
            "name": "GPS tracker",
            "severity": "high",
            "description": "Not requested.",
            "suggested_action": "Remove it.",
            "estimated_savings": 899,
        }
    ],
    "negotiation_script": {"email_text": "Hi,\nI offer $25,000.", "in_person_text": ""},
}
DEAL = {"zip_code": "90210", "preview": {"vehicle_name": "2021 Honda CR-V EX-L", "price": "$29,500"}}


def test_report_lines():
    text = [t for _, t in report_lines(REPORT, DEAL)]
    assert "Score: 42/100 (Risky)" in text
    assert "Target out-the-door: $24,500 - $25,200" in text
    assert "1. GPS tracker [high] - save up to $899" in text
    assert "Email script" in text
    assert "In-person script" not in text


def test_render_paginates_long_reports():
    long_report = dict(REPORT, red_flags=REPORT["red_flags"] * 80)
    pdf = render_report_pdf(long_report, DEAL)
    assert pdf.startswith(b"%PDF")
    assert len(re.findall(rb"/Type /Page(?!s)", pdf)) > 1
