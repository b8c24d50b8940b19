# partner_sync/models/contact.py

from .base import BaseModel, SoftDeleteMixin, db


class Contact(SoftDeleteMixin, BaseModel):
    """Partner contact mirrored from the PRM user feed"""

    __tablename__ = "contacts"

    id = db.Column(db.Integer, primary_key=True)
    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    title = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    prm_status = db.Column(db.String(50), nullable=True)

    prm_id = db.Column(db.String(64), nullable=True, index=True)
    crm_id = db.Column(db.String(18), nullable=True)
    # Owned by the LMS side; PRM syncs never overwrite it.
    lms_user_id = db.Column(db.String(64), nullable=True, index=True)

    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    partner = db.relationship("Partner", back_populates="contacts")

    def __repr__(self):
        return f"<Contact {self.email}>"

    @property
    def full_name(self):
        return " ".join(part for part in (self.first_name, self.last_name) if part)
