from .audit_db import AuditDB
from .models import AuditEntry

__all__ = [
    "AuditEntry",
    "AuditDB",
]
