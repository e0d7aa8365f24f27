#!/usr/bin/env python3
"""
ShadowBounty Statement Generator
=================================
PDF statements for settled bounties, built from the ledger and claim
records. Informational only: the escrow contract is the source of truth
for fund movements.

Templates:
  1. Award Settlement   (bounty closed by an approved claim)
  2. Cancellation Refund (bounty cancelled by its creator)

Usage:
    from shadowbounty_docs import generate_settlement_statement
    pdf_bytes = generate_settlement_statement(bounty, claim, token)

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import io
import os
from datetime import datetime
from typing import Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle,
)

from shadowbounty_types import (
    Bounty,
    Claim,
    CloseReason,
    InvalidInput,
    InvalidState,
    RewardToken,
    format_units,
)


# ── Brand Colors ──
INK         = HexColor("#1f2a44")
TEXT_DARK   = HexColor("#1a1a1a")
TEXT_LIGHT  = HexColor("#6e7681")
BORDER      = HexColor("#d0d7de")
PANEL       = HexColor("#f6f8fa")
RED_ACCENT  = HexColor("#da3633")


def _build_styles() -> Dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "brand": ParagraphStyle(
            "brand", parent=base["Normal"], fontName="Helvetica-Bold",
            fontSize=18, textColor=INK, leading=22, spaceAfter=6,
        ),
        "tagline": ParagraphStyle(
            "tagline", parent=base["Normal"], fontName="Helvetica",
            fontSize=8, textColor=TEXT_LIGHT, leading=10, spaceAfter=16,
        ),
        "subject": ParagraphStyle(
            "subject", parent=base["Normal"], fontName="Helvetica-Bold",
            fontSize=12, textColor=TEXT_DARK, spaceBefore=12, spaceAfter=12,
        ),
        "body": ParagraphStyle(
            "body", parent=base["Normal"], fontName="Helvetica",
            fontSize=11, textColor=TEXT_DARK, leading=16, spaceAfter=10,
            alignment=TA_JUSTIFY,
        ),
        "meta_label": ParagraphStyle(
            "meta_label", parent=base["Normal"], fontName="Helvetica",
            fontSize=9, textColor=TEXT_LIGHT,
        ),
        "meta_value": ParagraphStyle(
            "meta_value", parent=base["Normal"], fontName="Helvetica-Bold",
            fontSize=9, textColor=TEXT_DARK, wordWrap="CJK",
        ),
        "warning": ParagraphStyle(
            "warning", parent=base["Normal"], fontName="Helvetica-Bold",
            fontSize=10, textColor=RED_ACCENT, spaceBefore=8, spaceAfter=8,
        ),
        "footer": ParagraphStyle(
            "footer", parent=base["Normal"], fontName="Helvetica",
            fontSize=8, textColor=TEXT_LIGHT, alignment=TA_CENTER,
        ),
    }


def _fmt_date(ts: Optional[datetime]) -> str:
    return ts.strftime("%B %d, %Y %H:%M UTC") if ts else "N/A"


def _reward_text(bounty: Bounty, token: Optional[RewardToken]) -> str:
    if token is None:
        return f"{bounty.reward_amount} units of {bounty.reward_token}"
    return f"{format_units(bounty.reward_amount, token.decimals)} {token.symbol}"


def _add_header(story: list, styles):
    story.append(Paragraph("ShadowBounty", styles["brand"]))
    story.append(Paragraph(
        "Escrowed Intelligence Bounties  |  Settlement Statement",
        styles["tagline"],
    ))
    story.append(HRFlowable(width="100%", thickness=1.5, color=INK, spaceAfter=16))


def _add_meta_table(story: list, styles, rows: List[List[str]]):
    """Two label/value pairs per row."""
    data = [
        [Paragraph(escape(cell), styles["meta_label" if i % 2 == 0 else "meta_value"])
         for i, cell in enumerate(row)]
        for row in rows
    ]
    table = Table(data, colWidths=[1.2 * inch, 2.3 * inch, 1.2 * inch, 2.3 * inch])
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), PANEL),
        ("BOX", (0, 0), (-1, -1), 0.5, BORDER),
        ("INNERGRID", (0, 0), (-1, -1), 0.5, BORDER),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ("LEFTPADDING", (0, 0), (-1, -1), 8),
        ("RIGHTPADDING", (0, 0), (-1, -1), 8),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]))
    story.append(table)
    story.append(Spacer(1, 16))


def _add_footer(story: list, styles, bounty: Bounty):
    story.append(Spacer(1, 30))
    story.append(HRFlowable(width="100%", thickness=0.5, color=BORDER, spaceAfter=8))
    story.append(Paragraph(
        "This statement summarises the marketplace's records. Token transfers are executed "
        "by the escrow contract; the transaction reference above is authoritative.",
        styles["footer"],
    ))
    story.append(Paragraph(
        f"Bounty #{bounty.bounty_id} | Generated: {datetime.utcnow().strftime('%Y-%m-%d %H:%M UTC')}",
        styles["footer"],
    ))


def _build_award(bounty: Bounty, claim: Optional[Claim], token: Optional[RewardToken]) -> list:
    if claim is None:
        raise InvalidInput(f"Award statement for bounty #{bounty.bounty_id} needs the winning claim")
    styles = _build_styles()
    story: list = []
    _add_header(story, styles)
    _add_meta_table(story, styles, [
        ["Bounty", f"#{bounty.bounty_id}", "Closed", _fmt_date(bounty.closed_at)],
        ["Title", bounty.title, "Reward", _reward_text(bounty, token)],
        ["Creator", bounty.creator, "Recipient", claim.submitter],
        ["Escrow Ref", bounty.escrow_ref or "N/A", "Release Tx", bounty.release_tx or "N/A"],
        ["Claim", f"#{claim.claim_id}", "Approved", _fmt_date(claim.resolved_at)],
        ["Content ID", claim.content_id, "Encryption", claim.encryption.value],
    ])
    story.append(Paragraph("Award Settlement", styles["subject"]))
    story.append(Paragraph(
        f"Claim #{claim.claim_id} was approved by the bounty creator. The escrowed reward of "
        f"{escape(_reward_text(bounty, token))} was released to {escape(claim.submitter)} and the bounty was "
        f"closed. No other claim against this bounty can be approved.",
        styles["body"],
    ))
    story.append(Paragraph(f"Public teaser: {escape(claim.teaser)}", styles["body"]))
    if not claim.confidential:
        story.append(Paragraph(
            "WARNING: the evidence for this claim was stored base64-encoded, NOT encrypted. "
            "Treat its content as disclosed.",
            styles["warning"],
        ))
    _add_footer(story, styles, bounty)
    return story


def _build_cancellation(bounty: Bounty, claim: Optional[Claim], token: Optional[RewardToken]) -> list:
    styles = _build_styles()
    story: list = []
    _add_header(story, styles)
    _add_meta_table(story, styles, [
        ["Bounty", f"#{bounty.bounty_id}", "Cancelled", _fmt_date(bounty.closed_at)],
        ["Title", bounty.title, "Reward", _reward_text(bounty, token)],
        ["Creator", bounty.creator, "Escrow Ref", bounty.escrow_ref or "N/A"],
    ])
    story.append(Paragraph("Cancellation Refund", styles["subject"]))
    story.append(Paragraph(
        f"The creator cancelled this bounty before any claim was approved. The escrowed reward "
        f"of {escape(_reward_text(bounty, token))} was returned to {escape(bounty.creator)}.",
        styles["body"],
    ))
    _add_footer(story, styles, bounty)
    return story


# ── Template Registry ──
TEMPLATES = {
    CloseReason.AWARDED: {
        "name": "Award Settlement",
        "builder": _build_award,
    },
    CloseReason.CANCELLED: {
        "name": "Cancellation Refund",
        "builder": _build_cancellation,
    },
}


def generate_settlement_statement(
    bounty: Bounty,
    claim: Optional[Claim] = None,
    token: Optional[RewardToken] = None,
    output_path: Optional[str] = None,
) -> bytes:
    """
    Render the statement for a Closed bounty as PDF bytes.

    Args:
        bounty: The closed bounty; its close_reason picks the template.
        claim: The winning claim (required for awarded bounties).
        token: Registry entry for the reward token, for display units.
        output_path: If provided, also writes the PDF there.
    """
    if bounty.is_open or bounty.close_reason not in TEMPLATES:
        raise InvalidState(f"Bounty #{bounty.bounty_id} is not settled")

    template = TEMPLATES[bounty.close_reason]
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.6 * inch,
        title=f"ShadowBounty - {template['name']} #{bounty.bounty_id}",
        author="ShadowBounty",
    )
    doc.build(template["builder"](bounty, claim, token))
    pdf_bytes = buffer.getvalue()
    buffer.close()

    if output_path:
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(pdf_bytes)

    return pdf_bytes
