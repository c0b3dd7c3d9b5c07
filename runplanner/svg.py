from typing import Optional

from .models import DielineGeometry, LayoutOption


EMPTY_SVG = "<svg xmlns=\"http://www.w3.org/2000/svg\" width=\"1\" height=\"1\"></svg>"

RUN_HEIGHT = 120.0
HEADER = 16.0


def _escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def render_svg(option: Optional[LayoutOption], dieline: DielineGeometry) -> str:
    """Slot diagram of a layout: one row per run, one column per slot across the roll."""
    if option is None or not option.runs or dieline.columns_across <= 0:
        return EMPTY_SVG

    margin = 20.0
    pitch = dieline.label_width + dieline.h_gap
    roll_width = max(dieline.roll_width, pitch * dieline.columns_across)
    max_frames = max(run.frames for run in option.runs) or 1

    total_width = roll_width + 2 * margin
    total_height = len(option.runs) * (RUN_HEIGHT + HEADER + margin) + margin

    parts = [
        f"<svg xmlns=\"http://www.w3.org/2000/svg\" width=\"{total_width}\" height=\"{total_height}\" viewBox=\"0 0 {total_width} {total_height}\">",
        "<style>",
        ".roll{fill:none;stroke:#1f2937;stroke-width:1}",
        ".slot{fill:#93c5fd;stroke:#1e3a8a;stroke-width:0.8}",
        ".empty{fill:#f3f4f6;stroke:#9ca3af;stroke-width:0.5}",
        ".label{font-family:Arial, sans-serif;font-size:10px;fill:#111827}",
        "</style>",
    ]

    y_cursor = margin
    for run in option.runs:
        height = RUN_HEIGHT * run.frames / max_frames
        parts.append(f"<g transform=\"translate({margin} {y_cursor})\">")
        title = _escape(f"Run {run.run_number}: {run.frames} frames, {run.meters:.2f}m")
        parts.append(f"<text class=\"label\" x=\"0\" y=\"12\">{title}</text>")
        parts.append(
            f"<rect class=\"roll\" x=\"0\" y=\"{HEADER}\" width=\"{roll_width}\" height=\"{height}\" />"
        )
        by_slot = {a.slot_index: a for a in run.slot_assignments}
        for slot in range(dieline.columns_across):
            x = slot * pitch
            assignment = by_slot.get(slot)
            css = "slot" if assignment is not None else "empty"
            parts.append(
                f"<rect class=\"{css}\" x=\"{x}\" y=\"{HEADER}\" width=\"{dieline.label_width}\" height=\"{height}\" />"
            )
            if assignment is not None:
                label = _escape(f"{assignment.item_id} x{assignment.quantity_in_slot}")
                parts.append(
                    f"<text class=\"label\" x=\"{x + 2}\" y=\"{HEADER + 12}\">{label}</text>"
                )
        parts.append("</g>")
        y_cursor += RUN_HEIGHT + HEADER + margin

    parts.append("</svg>")
    return "".join(parts)
