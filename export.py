from __future__ import annotations

import io
import json
from datetime import datetime, timezone
from typing import Any, Sequence
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from records import ConflictRecord, IntegrityWarning, ResolutionResult


def _safe_text(value: Any) -> str:
    # Paragraph text is reportlab markup.
    if value is None:
        return "-"
    return escape(str(value))


def conflict_to_dict(conflict: ConflictRecord) -> dict[str, Any]:
    return {
        "applicant_id": conflict.applicant_id,
        "cycle_id": conflict.cycle_id,
        "priority_score": conflict.priority_score,
        "applications": [
            {
                "application_id": app.application_id,
                "offering_id": str(app.offering_id),
                "submitted_at": app.submitted_at.isoformat(),
                "status": app.status.value,
                "is_final": app.is_final,
            }
            for app in conflict.applications
        ],
    }


def build_conflict_report_pdf(
    conflicts: Sequence[ConflictRecord],
    results: Sequence[ResolutionResult] = (),
    warnings: Sequence[IntegrityWarning] = (),
    generated_at: datetime | None = None,
) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title="Admission Conflict Report")
    styles = getSampleStyleSheet()
    normal = styles["BodyText"]
    heading = styles["Heading2"]

    stamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    story = []
    story.append(Paragraph("Admission Conflict Report", styles["Title"]))
    story.append(Paragraph(f"Generated: {stamp}", normal))
    story.append(Paragraph(f"Pending conflicts: {len(conflicts)}", normal))
    story.append(Spacer(1, 12))

    if conflicts:
        story.append(Paragraph("Conflict Queue (highest priority first)", heading))
        for idx, conflict in enumerate(conflicts, start=1):
            story.append(
                Paragraph(
                    f"{idx}. Applicant {_safe_text(conflict.applicant_id)} "
                    f"(cycle {_safe_text(conflict.cycle_id)}, priority {conflict.priority_score:g})",
                    styles["Heading3"],
                )
            )
            for app in conflict.applications:
                story.append(
                    Paragraph(
                        f"- {_safe_text(app.offering_id)}: application {_safe_text(app.application_id)}, "
                        f"submitted {app.submitted_at.isoformat()}",
                        normal,
                    )
                )
            story.append(Spacer(1, 8))
    else:
        story.append(Paragraph("No open conflicts.", normal))

    if results:
        story.append(Paragraph("Resolutions", heading))
        for result in results:
            story.append(
                Paragraph(
                    f"Applicant {_safe_text(result.applicant_id)}: {_safe_text(result.winning_offering_id)} final "
                    f"(application {_safe_text(result.winning_application_id)}); rejected: "
                    f"{_safe_text(', '.join(result.rejected_application_ids) or None)}",
                    normal,
                )
            )
        story.append(Spacer(1, 8))

    if warnings:
        story.append(Paragraph("Data Integrity Warnings", heading))
        for warning in warnings:
            story.append(Paragraph(f"- {_safe_text(warning.message)}", normal))

    doc.build(story)
    buffer.seek(0)
    return buffer.read()


def build_json_summary(
    conflicts: Sequence[ConflictRecord],
    results: Sequence[ResolutionResult] = (),
) -> bytes:
    payload = {
        "conflicts": [conflict_to_dict(conflict) for conflict in conflicts],
        "resolutions": [result.to_dict() for result in results],
    }
    return json.dumps(payload, indent=2, ensure_ascii=True).encode("utf-8")
