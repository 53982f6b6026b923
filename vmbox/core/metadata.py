from datetime import datetime, timezone
from enum import Enum
from typing import List

class VMStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    ERROR = "error"

class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"

class CreditRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"

# Statuses that still hold a port and count against the per-user quota
ACTIVE_STATUSES: List[VMStatus] = [
    VMStatus.CREATING,
    VMStatus.RUNNING,
    VMStatus.STOPPED,
    VMStatus.ERROR,
]

CONTAINER_LABEL_PREFIX = "vmbox"
LABEL_OWNER = f"{CONTAINER_LABEL_PREFIX}.owner"
LABEL_VM_NAME = f"{CONTAINER_LABEL_PREFIX}.vm-name"
LABEL_MANAGED = f"{CONTAINER_LABEL_PREFIX}.managed"

SSH_CONTAINER_PORT = 22
WORKSPACE_MOUNT = "/workspace"

DROPPED_CAPABILITIES: List[str] = ["ALL"]
ALLOWED_CAPABILITIES: List[str] = ["CHOWN", "SETUID", "SETGID", "NET_BIND_SERVICE"]
SECURITY_OPTIONS: List[str] = ["no-new-privileges:true"]
RESTART_POLICY = {"Name": "on-failure", "MaximumRetryCount": 3}

SECONDS_PER_HOUR = 3600

CREDIT_REQUEST_MIN_AMOUNT = 1
CREDIT_REQUEST_MAX_AMOUNT = 1000
CREDIT_REQUEST_MIN_REASON = 10
CREDIT_REQUEST_MAX_TEXT = 500
MAX_PENDING_CREDIT_REQUESTS = 3

def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
