"""SQLAlchemy models for the relational (authoritative) store."""

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, Enum, String, Text, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from proposal_sync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProposalStatus(str, enum.Enum):
    """Lifecycle status of a proposal."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    REVISION_REQUESTED = "revision_requested"


# Statuses that close a review round and stamp reviewed_at
REVIEWED_STATUSES = frozenset({ProposalStatus.APPROVED, ProposalStatus.DENIED})


class ProposalRecord(Base):
    """Proposal row. Source of truth for every field it shares with the document mirror."""

    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Organization / contact
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Event
    event_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_venue: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)  # online | offline | hybrid
    event_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    event_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Review workflow
    proposal_status: Mapped[ProposalStatus] = mapped_column(
        Enum(
            ProposalStatus,
            name="proposal_status",
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=ProposalStatus.DRAFT,
    )
    admin_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        {"comment": "Proposal submissions; mirrored into the document store"},
    )

    def __repr__(self) -> str:
        return f"<ProposalRecord id={self.id} status={self.proposal_status}>"
