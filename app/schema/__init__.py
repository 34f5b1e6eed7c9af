"""Schema package exports."""

from .accounts import Tenant, TenantUser
from .jobs import Job
from .provisioning import PendingProvisioning

__all__ = ["Job", "PendingProvisioning", "Tenant", "TenantUser"]
