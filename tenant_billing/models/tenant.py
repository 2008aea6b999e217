"""Tenant models.

- Tenant: an isolated customer organization; unit of billing and of
  permission scoping.
- Clinic: a location owned by a tenant. Users are linked to clinics
  (see UserClinic in models/rbac.py), and the clinic resolves the tenant.
"""

import uuid

from tenant_billing.extensions import db


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    email = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    clinics = db.relationship("Clinic", back_populates="tenant", lazy="dynamic")
    users = db.relationship("User", back_populates="tenant", lazy="dynamic")
    subscriptions = db.relationship(
        "TenantSubscription", back_populates="tenant", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Tenant {self.slug}>"


class Clinic(db.Model):
    __tablename__ = "clinics"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=False, index=True
    )
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    tenant = db.relationship("Tenant", back_populates="clinics")
    user_links = db.relationship(
        "UserClinic", back_populates="clinic", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Clinic {self.name}>"
