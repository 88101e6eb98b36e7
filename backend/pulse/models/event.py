from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base


class Event(Base):
    """Raw event: append-only, high volume.

    ``processed_at`` is the outbox marker: a row is written with it NULL in the
    same transaction as the event itself and stamped once the aggregation
    pipeline has applied the event.
    """

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False, default="pageview")
    url: Mapped[str] = mapped_column(Text, nullable=False)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    country: Mapped[str] = mapped_column(String(64), nullable=False, default="Unknown")
    browser: Mapped[str] = mapped_column(String(32), nullable=False, default="Unknown")
    os: Mapped[str] = mapped_column(String(32), nullable=False, default="Unknown")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_events_project_timestamp", "project_id", "timestamp", "id"),
        Index("ix_events_unprocessed", "processed_at", "timestamp"),
    )
