from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from vmbox.core.exceptions import (
    CreditRequestNotFoundError,
    InsufficientCreditsError,
    InvalidStateError,
    PortExhaustedError,
    QuotaExceededError,
    RuntimeAdapterError,
    UserNotFoundError,
    VMNotFoundError,
)
from vmbox.core.services import VMServices
from vmbox.core.terminal import CLOSE_POLICY_VIOLATION, WebSocketChannel
from vmbox.db.models import User
import logging

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()

ERROR_STATUS = [
    (VMNotFoundError, status.HTTP_404_NOT_FOUND),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
    (CreditRequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (QuotaExceededError, status.HTTP_403_FORBIDDEN),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (PortExhaustedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RuntimeAdapterError, status.HTTP_502_BAD_GATEWAY),
    (ValueError, status.HTTP_400_BAD_REQUEST),
]

def to_http_error(e: Exception) -> HTTPException:
    """Translate a service-layer failure into an HTTP error"""
    if isinstance(e, HTTPException):
        return e
    for exc_type, code in ERROR_STATUS:
        if isinstance(e, exc_type):
            return HTTPException(status_code=code, detail=str(e))
    logger.exception(e)
    return HTTPException(status_code=500, detail=str(e))

class ProvisionRequest(BaseModel):
    name: str = Field(..., pattern="^[a-zA-Z0-9-]{1,63}$", description="Letters, numbers and hyphens")
    image: Optional[str] = Field(default=None, pattern="^[a-zA-Z0-9][a-zA-Z0-9_.-]*(/[a-zA-Z0-9_.-]+)*(:[a-zA-Z0-9_.-]+)?$")
    memory_limit: Optional[int] = Field(default=None, ge=6 * 1024 * 1024, description="Memory limit in bytes")
    cpu_shares: Optional[int] = Field(default=None, ge=2, le=262144)

class ExecRequest(BaseModel):
    command: List[str] = Field(..., min_length=1)

class CreditAdjustRequest(BaseModel):
    amount: int = Field(..., gt=0)
    operation: Literal["add", "remove"] = "add"

class VMResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    total_runtime_seconds: int
    credits_consumed: int
    last_started_at: Optional[datetime] = None
    last_stopped_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    created_at: datetime

class ContainerStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    running: bool
    status: Optional[str] = None
    ip_address: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class VMStatusResponse(BaseModel):
    vm: VMResponse
    container: Optional[ContainerStateResponse] = None

class ExecResponse(BaseModel):
    output: str
    exit_code: int

class CreditsResponse(BaseModel):
    user_id: int
    credits: int
    hourly_rate: int

class CreditRequestCreate(BaseModel):
    amount: int = Field(..., ge=1, le=1000)
    reason: str = Field(..., min_length=10, max_length=500)

class CreditRequestReview(BaseModel):
    action: Literal["approve", "deny"]
    note: Optional[str] = Field(default=None, max_length=500)

class CreditRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    amount: int
    reason: str
    status: str
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    created_at: datetime

class StatsResponse(BaseModel):
    total_users: int
    total_vms: int
    running_vms: int
    pending_requests: int

def get_services(request: Request) -> VMServices:
    return request.app.state.services

async def current_user(
    x_api_key: Optional[str] = Header(default=None),
    services: VMServices = Depends(get_services),
) -> User:
    user = await services.authenticate(x_api_key)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return user

async def admin_user(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user

# VM endpoints

@router.get("/vms", response_model=List[VMResponse], tags=["VMs"])
async def list_vms(user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    """List the caller's VMs, newest first"""
    try:
        return await services.lifecycle.list_for_owner(user.id)
    except Exception as e:
        raise to_http_error(e)

@router.post("/vms", response_model=VMResponse, status_code=201, tags=["VMs"])
async def provision_vm(
    request: ProvisionRequest,
    user: User = Depends(current_user),
    services: VMServices = Depends(get_services),
):
    """Create and start a new VM"""
    try:
        return await services.lifecycle.provision(
            user.id,
            request.name,
            image=request.image,
            memory_limit=request.memory_limit,
            cpu_shares=request.cpu_shares,
        )
    except Exception as e:
        raise to_http_error(e)

@router.get("/vms/{vm_id}", response_model=VMStatusResponse, tags=["VMs"])
async def get_vm(vm_id: str, user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    """VM record reconciled against its container"""
    try:
        report = await services.lifecycle.status(vm_id, user.id)
        return VMStatusResponse(
            vm=VMResponse.model_validate(report.vm),
            container=ContainerStateResponse.model_validate(report.container) if report.container else None,
        )
    except Exception as e:
        raise to_http_error(e)

@router.post("/vms/{vm_id}/start", response_model=VMResponse, tags=["VMs"])
async def start_vm(vm_id: str, user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    try:
        return await services.lifecycle.start(vm_id, user.id)
    except Exception as e:
        raise to_http_error(e)

@router.post("/vms/{vm_id}/stop", response_model=VMResponse, tags=["VMs"])
async def stop_vm(vm_id: str, user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    try:
        return await services.lifecycle.stop(vm_id, user.id)
    except Exception as e:
        raise to_http_error(e)

@router.delete("/vms/{vm_id}", response_model=VMResponse, tags=["VMs"])
async def terminate_vm(vm_id: str, user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    """Terminate a VM and release its port"""
    try:
        return await services.lifecycle.terminate(vm_id, user.id)
    except Exception as e:
        raise to_http_error(e)

@router.post("/vms/{vm_id}/exec", response_model=ExecResponse, tags=["VMs"])
async def exec_vm(
    vm_id: str,
    request: ExecRequest,
    user: User = Depends(current_user),
    services: VMServices = Depends(get_services),
):
    """Run a one-shot command inside a running VM"""
    try:
        return await services.lifecycle.exec_command(vm_id, user.id, request.command)
    except Exception as e:
        raise to_http_error(e)

@router.get("/credits", response_model=CreditsResponse, tags=["Credits"])
async def get_credits(user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    try:
        balance = await services.credits.balance(user.id)
        return CreditsResponse(user_id=user.id, credits=balance, hourly_rate=services.credits.hourly_rate)
    except Exception as e:
        raise to_http_error(e)

@router.get("/credits/requests", response_model=List[CreditRequestResponse], tags=["Credits"])
async def list_credit_requests(user: User = Depends(current_user), services: VMServices = Depends(get_services)):
    """The caller's most recent credit requests"""
    try:
        return await services.credit_requests.list_for_user(user.id)
    except Exception as e:
        raise to_http_error(e)

@router.post("/credits/requests", response_model=CreditRequestResponse, status_code=201, tags=["Credits"])
async def submit_credit_request(
    request: CreditRequestCreate,
    user: User = Depends(current_user),
    services: VMServices = Depends(get_services),
):
    try:
        return await services.credit_requests.submit(user.id, request.amount, request.reason)
    except Exception as e:
        raise to_http_error(e)

@router.delete("/credits/requests/{request_id}", status_code=204, tags=["Credits"])
async def cancel_credit_request(
    request_id: int,
    user: User = Depends(current_user),
    services: VMServices = Depends(get_services),
):
    """Withdraw a request that is still pending"""
    try:
        await services.credit_requests.cancel(user.id, request_id)
    except Exception as e:
        raise to_http_error(e)

# Admin endpoints

@router.get("/admin/vms", response_model=List[VMResponse], tags=["Admin"])
async def admin_list_vms(user: User = Depends(admin_user), services: VMServices = Depends(get_services)):
    try:
        return await services.lifecycle.list_all()
    except Exception as e:
        raise to_http_error(e)

@router.get("/admin/containers", tags=["Admin"])
async def admin_list_containers(user: User = Depends(admin_user), services: VMServices = Depends(get_services)):
    """Every container on the host, managed or not"""
    try:
        return await services.runtime.list_all()
    except Exception as e:
        raise to_http_error(e)

@router.post("/admin/containers/{handle}/stop", tags=["Admin"])
async def admin_stop_container(handle: str, user: User = Depends(admin_user), services: VMServices = Depends(get_services)):
    try:
        vm = await services.lifecycle.admin_force_stop(handle)
        logger.info(f"Admin {user.username} force-stopped container {handle}")
        return {"handle": handle, "vm": VMResponse.model_validate(vm) if vm else None}
    except Exception as e:
        raise to_http_error(e)

@router.delete("/admin/containers/{handle}", tags=["Admin"])
async def admin_remove_container(handle: str, user: User = Depends(admin_user), services: VMServices = Depends(get_services)):
    try:
        vm = await services.lifecycle.admin_force_remove(handle)
        logger.info(f"Admin {user.username} force-removed container {handle}")
        return {"handle": handle, "vm": VMResponse.model_validate(vm) if vm else None}
    except Exception as e:
        raise to_http_error(e)

@router.patch("/admin/users/{user_id}/credits", response_model=CreditsResponse, tags=["Admin"])
async def admin_adjust_credits(
    user_id: int,
    request: CreditAdjustRequest,
    user: User = Depends(admin_user),
    services: VMServices = Depends(get_services),
):
    try:
        balance = await services.credits.adjust(user_id, request.amount, request.operation)
        return CreditsResponse(user_id=user_id, credits=balance, hourly_rate=services.credits.hourly_rate)
    except Exception as e:
        raise to_http_error(e)

@router.get("/admin/runtime", tags=["Admin"])
async def admin_runtime(user: User = Depends(admin_user), services: VMServices = Depends(get_services)) -> Dict[str, Any]:
    """Daemon reachability, host info and port pool usage"""
    try:
        reachable = await services.runtime.ping()
        info = await services.runtime.host_info() if reachable else {}
        used, capacity = await services.ports.usage()
        return {
            "reachable": reachable,
            "containers": info.get("Containers"),
            "containers_running": info.get("ContainersRunning"),
            "server_version": info.get("ServerVersion"),
            "ports_used": used,
            "ports_capacity": capacity,
            "terminal_sessions": services.terminals.active_count(),
        }
    except Exception as e:
        raise to_http_error(e)

@router.get("/admin/credit-requests", response_model=List[CreditRequestResponse], tags=["Admin"])
async def admin_list_credit_requests(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user: User = Depends(admin_user),
    services: VMServices = Depends(get_services),
):
    try:
        return await services.credit_requests.list_all(status_filter)
    except Exception as e:
        raise to_http_error(e)

@router.patch("/admin/credit-requests/{request_id}", response_model=CreditRequestResponse, tags=["Admin"])
async def admin_review_credit_request(
    request_id: int,
    review: CreditRequestReview,
    user: User = Depends(admin_user),
    services: VMServices = Depends(get_services),
):
    """Approve or deny a pending request; approval credits the requester"""
    try:
        return await services.credit_requests.review(request_id, user.id, review.action, review.note)
    except Exception as e:
        raise to_http_error(e)

@router.get("/admin/stats", response_model=StatsResponse, tags=["Admin"])
async def admin_stats(user: User = Depends(admin_user), services: VMServices = Depends(get_services)):
    try:
        return await services.stats()
    except Exception as e:
        raise to_http_error(e)

# Terminal WebSocket

@ws_router.websocket("/ws/terminal")
async def terminal_socket(websocket: WebSocket):
    """Interactive shell: ?token=<api key>&vmId=<vm id>"""
    services: VMServices = websocket.app.state.services
    token = websocket.query_params.get("token")
    vm_id = websocket.query_params.get("vmId")

    await websocket.accept()
    channel = WebSocketChannel(websocket)

    if not token:
        await channel.close(code=CLOSE_POLICY_VIOLATION, reason="Missing authentication token")
        return
    user = await services.authenticate(token)
    if user is None:
        await channel.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid authentication token")
        return
    if not vm_id:
        await channel.close(code=CLOSE_POLICY_VIOLATION, reason="Missing vmId parameter")
        return

    session = await services.terminals.open_session(channel, user.id, vm_id)
    if session is None:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                channel.mark_closed()
                break
            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            if text is not None:
                await services.terminals.handle_message(session.session_id, text)
            if session.session_id not in services.terminals.sessions:
                break
    finally:
        await services.terminals.close_session(session.session_id)
