# partner_sync/models/partner.py

from sqlalchemy import Enum, Index

from .base import BaseModel, SoftDeleteMixin, db
from .enums import PartnerTier


class Partner(SoftDeleteMixin, BaseModel):
    """Partner company mirrored from the PRM account feed"""

    __tablename__ = "partners"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    tier = db.Column(Enum(PartnerTier, name="partner_tier_enum"), nullable=True, index=True)
    account_status = db.Column(db.String(50), nullable=True)
    partner_type = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(100), nullable=True)
    country = db.Column(db.String(100), nullable=True)
    website = db.Column(db.String(500), nullable=True)

    owner_name = db.Column(db.String(200), nullable=True)
    owner_email = db.Column(db.String(255), nullable=True)

    # External identifiers
    prm_id = db.Column(db.String(64), nullable=True, index=True)
    prm_parent_id = db.Column(db.String(64), nullable=True)
    crm_id = db.Column(db.String(18), nullable=True, index=True)

    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    contacts = db.relationship("Contact", back_populates="partner")
    groups = db.relationship("LmsGroup", back_populates="partner")

    __table_args__ = (Index("idx_partner_active_prm", "is_active", "prm_id"),)

    def __repr__(self):
        return f"<Partner {self.name}>"

    @property
    def npcu_requirement(self):
        return self.tier.npcu_requirement if self.tier else None
