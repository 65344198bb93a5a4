from specflow.state.audit import AuditEntry, AuditLog, AuditReader
from specflow.state.checkpoints import Checkpoint, CheckpointStore
from specflow.state.context import ContextStore
from specflow.state.sessions import Blocker, SessionRecord, SessionStore

__all__ = [
    "AuditEntry",
    "AuditLog",
    "AuditReader",
    "Blocker",
    "Checkpoint",
    "CheckpointStore",
    "ContextStore",
    "SessionRecord",
    "SessionStore",
]
