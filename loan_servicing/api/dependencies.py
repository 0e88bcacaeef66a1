"""
Request-scoped dependencies: the servicing system and organization context
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..audit import AuditTrail
from ..config import get_config
from ..servicing import LoanServicer
from ..storage import InMemoryEntityStore, OrgContext


class ServicingSystem:
    """Servicing components wired over one entity store"""

    def __init__(self, storage=None):
        config = get_config()
        self.config = config
        self.storage = storage or InMemoryEntityStore()
        self.audit_trail = AuditTrail(self.storage) if config.enable_audit_logging else None
        self.servicer = LoanServicer(self.storage, self.audit_trail, config)


# Global servicing system instance
servicing_system = ServicingSystem()


def get_servicing_system() -> ServicingSystem:
    return servicing_system


def get_org_context(
    x_org_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None)
) -> OrgContext:
    """Organization scope from the X-Org-Id / X-User-Id headers"""
    if not x_org_id:
        raise HTTPException(status_code=400, detail="X-Org-Id header is required")
    return OrgContext(org_id=x_org_id, user_id=x_user_id)
