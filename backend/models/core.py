from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_STAFF = "ROLE_STAFF"  # Accountants and practice staff
    ROLE_MANAGER = "ROLE_MANAGER"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Templates
    TEMPLATE_CREATED = "TEMPLATE_CREATED"
    TEMPLATE_UPDATED = "TEMPLATE_UPDATED"
    TEMPLATE_DELETED = "TEMPLATE_DELETED"
    TEMPLATE_IMPORTED = "TEMPLATE_IMPORTED"

    # Letters
    LETTER_GENERATED = "LETTER_GENERATED"
    LETTER_DOWNLOADED = "LETTER_DOWNLOADED"

    # Bulk runs
    BULK_LETTERS_GENERATED = "BULK_LETTERS_GENERATED"
    BULK_ZIP_DOWNLOADED = "BULK_ZIP_DOWNLOADED"

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    client_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
