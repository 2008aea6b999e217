"""User model.

Stores authentication credentials and profile info.
Flask-Login integration via UserMixin.

Super admins operate the billing console and bypass the subscription
gate. Everyone else belongs to exactly one tenant.
"""

import uuid

from flask_login import UserMixin

from tenant_billing.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    is_super_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=True, index=True
    )
    # Stripe customer that holds this admin's own cards (pay-on-behalf)
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    tenant = db.relationship("Tenant", back_populates="users")
    clinic_links = db.relationship(
        "UserClinic", back_populates="user", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_super_admin": bool(self.is_super_admin),
            "tenant_id": self.tenant_id,
        }

    def __repr__(self):
        return f"<User {self.email}>"
