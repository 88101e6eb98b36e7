from datetime import datetime

from pydantic import BaseModel

from pulse.schemas.analytics import TopItem

MAX_VALUE_LENGTH = 200


def _clip(value: str) -> str:
    return value if len(value) <= MAX_VALUE_LENGTH else value[: MAX_VALUE_LENGTH - 3] + "..."


class InsightContext(BaseModel):
    """Bounded summary of a project's recent traffic for a language-model service.

    When the window holds no events ``sparse_data`` is set and every figure is
    zero; nothing is estimated.
    """

    project_id: str
    window: str
    start: datetime
    end: datetime
    total_pageviews: int
    unique_visitors: int
    bounce_rate: float
    top_pages: list[TopItem]
    top_referrers: list[TopItem]
    open_anomalies: int
    sparse_data: bool

    def to_prompt(self) -> str:
        """Plain-text rendering, one fact per line."""
        lines = [f"Analytics summary for project {self.project_id} (last {self.window}):"]
        if self.sparse_data:
            lines.append("- No events recorded in this window.")
        else:
            lines.append(f"- Total pageviews: {self.total_pageviews}")
            lines.append(f"- Unique visitors: {self.unique_visitors}")
            lines.append(f"- Bounce rate: {self.bounce_rate:.1%}")
            if self.top_pages:
                pages = ", ".join(f"{_clip(p.value)} ({p.count} views)" for p in self.top_pages)
                lines.append(f"- Top pages: {pages}")
            if self.top_referrers:
                refs = ", ".join(f"{_clip(r.value)} ({r.count} views)" for r in self.top_referrers)
                lines.append(f"- Top referrers: {refs}")
        lines.append(f"- Open anomalies: {self.open_anomalies}")
        return "\n".join(lines)


class InsightContextResponse(InsightContext):
    prompt: str
