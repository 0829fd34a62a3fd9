"""Audit ledger for security-relevant actions.

Writing an audit entry never fails the action being audited.
"""

import logging
from typing import Any, Optional

from .models import ActorType, AuditLog
from .storage import SQLiteStore

logger = logging.getLogger(__name__)


class AuditEvents:
    AI_FIX_START = "ai_fix_start"
    AI_PR_CREATED = "ai_pr_created"
    AI_FIX_FAILED = "ai_fix_failed"
    PR_MERGE = "pr_merge_internal"
    ROLLBACK = "rollback_triggered"
    ISSUE_UPDATE = "issue_update"
    GITHUB_SYNC = "github_sync"


class AuditLogger:
    def __init__(self, store: SQLiteStore):
        self.store = store

    def log(
        self,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
        actor_type: ActorType = ActorType.USER,
    ) -> Optional[AuditLog]:
        try:
            return self.store.log_audit(
                AuditLog(
                    actor_id=actor_id,
                    actor_type=actor_type,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    project_id=project_id,
                    description=description,
                    metadata=metadata or {},
                )
            )
        except Exception as e:
            logger.error(f"Failed to write audit entry {action} for {entity_type} {entity_id}: {e}")
            return None
