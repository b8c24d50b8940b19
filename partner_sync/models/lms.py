"""
SQLAlchemy models mirroring LMS entities: learners, groups, memberships,
courses and transcript enrollments.

LMS identifiers are opaque strings and serve as primary keys so upserts can be
keyed on the remote id directly.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, SoftDeleteMixin, db
from .enums import EnrollmentStatus, LmsUserStatus


class LmsUser(BaseModel):
    """Learner account mirrored from the LMS people feed."""

    __tablename__ = "lms_users"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    lms_created_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_active_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    deactivated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    status: Mapped[LmsUserStatus] = mapped_column(
        Enum(LmsUserStatus, name="lms_user_status_enum"),
        nullable=False,
        default=LmsUserStatus.ACTIVE,
        index=True,
    )
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    enrollment_synced_at: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        comment="Last transcript fetch; drives incremental enrollment selection",
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<LmsUser id={self.id} email={self.email}>"


class LmsGroup(SoftDeleteMixin, BaseModel):
    """LMS cohort, optionally dedicated to one partner."""

    __tablename__ = "lms_groups"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    user_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    partner_id: Mapped[int | None] = mapped_column(ForeignKey("partners.id"), nullable=True, index=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    partner = relationship("Partner", back_populates="groups")
    members = relationship(
        "LmsGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<LmsGroup id={self.id} name={self.name}>"


class LmsGroupMember(db.Model):
    """Membership of an LMS user in a group."""

    __tablename__ = "lms_group_members"

    group_id: Mapped[str] = mapped_column(ForeignKey("lms_groups.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    added_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    group = relationship("LmsGroup", back_populates="members")

    __table_args__ = (Index("idx_lms_group_members_user", "user_id"),)


class LmsCourse(BaseModel):
    """Course catalogue entry with its NPCU certification value."""

    __tablename__ = "lms_courses"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    npcu_value: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    is_certification: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))


class LmsEnrollment(BaseModel):
    """Transcript entry joining a user to a course."""

    __tablename__ = "lms_enrollments"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus, name="enrollment_status_enum"),
        nullable=False,
        default=EnrollmentStatus.ENROLLED,
        index=True,
    )
    progress_percent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    enrolled_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    score: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
