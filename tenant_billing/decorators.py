"""
Custom route decorators for access control.

- super_admin_required: ensures user is logged in AND has is_super_admin=True.
  Failures answer with the JSON error envelope (401 / 403).
"""

from functools import wraps

from flask_login import current_user, login_required

from tenant_billing.errors import Forbidden


def super_admin_required(f):
    """Require login + is_super_admin flag."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_super_admin:
            raise Forbidden("Super admin access required", code="SUPER_ADMIN_REQUIRED")
        return f(*args, **kwargs)

    return decorated
