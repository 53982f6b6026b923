from typing import Any, Dict, List, Optional
import httpx
from .models import (
    ContainerActionResult, ContainerInfo, CreditAdjustment, CreditBalance,
    CreditRequestInfo, ExecResult, ProvisionRequest, SystemStats, VMInfo, VMStatus
)

class VMClientError(Exception):
    """Base exception for VM API operations"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class VMClientConnectionError(VMClientError):
    """Raised when connection to the VM API fails"""
    pass

class VMClientTimeoutError(VMClientError):
    """Raised when a VM API call times out"""
    pass

class VMClientAuthError(VMClientError):
    """Raised when the API key is missing or rejected"""
    pass

class VMClientForbiddenError(VMClientError):
    """Raised on quota exhaustion or missing admin rights"""
    pass

class VMClientCreditsError(VMClientError):
    """Raised when the balance is too low for the operation"""
    pass

class VMClientNotFoundError(VMClientError):
    """Raised when a VM or container is not found"""
    pass

class VMClientStateError(VMClientError):
    """Raised when the VM is not in a state that allows the operation"""
    pass

class VMClientValidationError(VMClientError):
    """Raised when request validation fails"""
    pass

class VMClientOperationError(VMClientError):
    """Raised when a VM operation fails on the server"""
    pass

STATUS_ERRORS = {
    401: VMClientAuthError,
    402: VMClientCreditsError,
    403: VMClientForbiddenError,
    404: VMClientNotFoundError,
    409: VMClientStateError,
    422: VMClientValidationError,
}

class VMClient:
    def __init__(self, base_url: str, api_key: str, timeout: int = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"X-API-Key": api_key},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1{path}"

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, self._url(path), **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise VMClientTimeoutError(f"{method} {path} timed out: {str(e)}")
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            try:
                detail = e.response.json().get("detail", e.response.text)
            except ValueError:
                detail = e.response.text
            error_class = STATUS_ERRORS.get(code, VMClientOperationError)
            raise error_class(f"{method} {path} failed: {detail}", status_code=code)
        except httpx.TransportError as e:
            raise VMClientConnectionError(f"Failed to reach VM API: {str(e)}")
        if response.status_code == 204:
            return None
        return response.json()

    async def list_vms(self) -> List[VMInfo]:
        return [VMInfo(**vm) for vm in await self._request("GET", "/vms")]

    async def provision_vm(self, request: ProvisionRequest) -> VMInfo:
        """Create and start a new VM"""
        data = await self._request("POST", "/vms", json=request.model_dump(exclude_none=True))
        return VMInfo(**data)

    async def get_vm(self, vm_id: str) -> VMStatus:
        """VM record and observed container state"""
        return VMStatus(**await self._request("GET", f"/vms/{vm_id}"))

    async def start_vm(self, vm_id: str) -> VMInfo:
        return VMInfo(**await self._request("POST", f"/vms/{vm_id}/start"))

    async def stop_vm(self, vm_id: str) -> VMInfo:
        return VMInfo(**await self._request("POST", f"/vms/{vm_id}/stop"))

    async def terminate_vm(self, vm_id: str) -> VMInfo:
        return VMInfo(**await self._request("DELETE", f"/vms/{vm_id}"))

    async def exec_command(self, vm_id: str, command: List[str]) -> ExecResult:
        data = await self._request("POST", f"/vms/{vm_id}/exec", json={"command": command})
        return ExecResult(**data)

    async def get_credits(self) -> CreditBalance:
        return CreditBalance(**await self._request("GET", "/credits"))

    async def list_credit_requests(self) -> List[CreditRequestInfo]:
        return [CreditRequestInfo(**r) for r in await self._request("GET", "/credits/requests")]

    async def request_credits(self, amount: int, reason: str) -> CreditRequestInfo:
        """Ask an admin for more credits"""
        data = await self._request("POST", "/credits/requests", json={"amount": amount, "reason": reason})
        return CreditRequestInfo(**data)

    async def cancel_credit_request(self, request_id: int) -> None:
        await self._request("DELETE", f"/credits/requests/{request_id}")

    def terminal_url(self, vm_id: str, api_key: str) -> str:
        """WebSocket URL for an interactive terminal on vm_id"""
        ws_base = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return str(httpx.URL(f"{ws_base}/ws/terminal", params={"token": api_key, "vmId": vm_id}))

    # Admin operations

    async def admin_list_vms(self) -> List[VMInfo]:
        return [VMInfo(**vm) for vm in await self._request("GET", "/admin/vms")]

    async def admin_list_containers(self) -> List[ContainerInfo]:
        return [ContainerInfo(**c) for c in await self._request("GET", "/admin/containers")]

    async def admin_stop_container(self, handle: str) -> ContainerActionResult:
        data = await self._request("POST", f"/admin/containers/{handle}/stop")
        return ContainerActionResult(**data)

    async def admin_remove_container(self, handle: str) -> ContainerActionResult:
        data = await self._request("DELETE", f"/admin/containers/{handle}")
        return ContainerActionResult(**data)

    async def admin_adjust_credits(self, user_id: int, adjustment: CreditAdjustment) -> CreditBalance:
        data = await self._request("PATCH", f"/admin/users/{user_id}/credits", json=adjustment.model_dump())
        return CreditBalance(**data)

    async def admin_runtime(self) -> Dict[str, Any]:
        return await self._request("GET", "/admin/runtime")

    async def admin_list_credit_requests(self, status: Optional[str] = None) -> List[CreditRequestInfo]:
        params = {"status": status} if status else None
        data = await self._request("GET", "/admin/credit-requests", params=params)
        return [CreditRequestInfo(**r) for r in data]

    async def admin_review_credit_request(
        self, request_id: int, action: str, note: Optional[str] = None
    ) -> CreditRequestInfo:
        payload = {"action": action, "note": note} if note else {"action": action}
        data = await self._request("PATCH", f"/admin/credit-requests/{request_id}", json=payload)
        return CreditRequestInfo(**data)

    async def admin_stats(self) -> SystemStats:
        return SystemStats(**await self._request("GET", "/admin/stats"))
