# Models package: import all models here so Alembic can discover them.

from tenant_billing.models.tenant import Tenant, Clinic  # noqa: F401
from tenant_billing.models.user import User  # noqa: F401
from tenant_billing.models.billing import (  # noqa: F401
    SubscriptionPlan,
    TenantSubscription,
)
from tenant_billing.models.transaction import StripeTransaction  # noqa: F401
from tenant_billing.models.stripe_event import StripeEvent  # noqa: F401
from tenant_billing.models.audit import AuditEvent  # noqa: F401
from tenant_billing.models.rbac import (  # noqa: F401
    Permission,
    Role,
    RolePermission,
    UserClinic,
    UserClinicRole,
    PermissionAuditEntry,
)
