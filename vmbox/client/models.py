from typing import Dict, List, Optional, Any, Literal
from datetime import datetime
from pydantic import BaseModel, Field

class ProvisionRequest(BaseModel):
    name: str = Field(..., pattern="^[a-zA-Z0-9-]{1,63}$")
    image: Optional[str] = None
    memory_limit: Optional[int] = Field(default=None, ge=6 * 1024 * 1024)
    cpu_shares: Optional[int] = Field(default=None, ge=2, le=262144)

class VMInfo(BaseModel):
    id: str
    owner_id: int
    name: str
    status: str
    port: Optional[int] = None
    ip_address: Optional[str] = None
    image: str
    runtime_handle: Optional[str] = None
    memory_limit: int
    cpu_shares: int
    total_runtime_seconds: int = 0
    credits_consumed: int = 0
    last_started_at: Optional[datetime] = None
    last_stopped_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_running(self) -> bool:
        return self.status == "running"

class ContainerState(BaseModel):
    running: bool
    status: Optional[str] = None
    ip_address: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class VMStatus(BaseModel):
    vm: VMInfo
    container: Optional[ContainerState] = None

class ExecResult(BaseModel):
    output: str
    exit_code: int

class CreditBalance(BaseModel):
    user_id: int
    credits: int
    hourly_rate: int

class CreditAdjustment(BaseModel):
    amount: int = Field(..., gt=0)
    operation: Literal["add", "remove"] = "add"

class CreditRequestInfo(BaseModel):
    id: int
    user_id: int
    amount: int
    reason: str
    status: str
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    created_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

class SystemStats(BaseModel):
    total_users: int
    total_vms: int
    running_vms: int
    pending_requests: int

class ContainerInfo(BaseModel):
    container_id: str
    image: Optional[str] = None
    names: List[str] = Field(default_factory=list)
    state: Optional[str] = None
    status: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    created: Optional[Any] = None

class ContainerActionResult(BaseModel):
    handle: str
    vm: Optional[VMInfo] = None
