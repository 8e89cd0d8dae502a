from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.lgu.models import Base
from app.lgu.utils import utcnow


class Transaction(Base):
    """
    One payment attempt for a service.

    The service snapshot and payment metadata are denormalized so reports stay
    stable when the catalog or the owner's profile changes later.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_date", "date"),
        Index("idx_transactions_status", "status"),
        Index("idx_transactions_service_id", "service_id"),
        Index("idx_transactions_service_name", "service_name"),
        Index("idx_transactions_channel", "channel"),
        Index("idx_transactions_user_id", "user_id"),
        Index("idx_transactions_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Business date; legacy rows may not have one (reports fall back to created_at)
    date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Service snapshot
    service_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    service_other_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Details
    reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    form_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")

    # Payment metadata; channel is mirrored into its own column for filtering
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Owner snapshot
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    user_full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by_admin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # admin id or "user"

    # {"email": {"paidSentAt": ..., "failedSentAt": ..., "refundedSentAt": ...}}
    notifications: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def bucket_date(self) -> datetime:
        return self.date or self.created_at
