from .models import (
    ProvisionRequest, VMInfo, VMStatus, ContainerState, ExecResult,
    CreditBalance, CreditAdjustment, CreditRequestInfo, SystemStats,
    ContainerInfo, ContainerActionResult
)

from .client import (
    VMClient, VMClientError, VMClientConnectionError, VMClientTimeoutError,
    VMClientAuthError, VMClientForbiddenError, VMClientCreditsError,
    VMClientNotFoundError, VMClientStateError, VMClientValidationError,
    VMClientOperationError
)

__all__ = [
    'VMClient',
    'VMClientError',
    'VMClientConnectionError',
    'VMClientTimeoutError',
    'VMClientAuthError',
    'VMClientForbiddenError',
    'VMClientCreditsError',
    'VMClientNotFoundError',
    'VMClientStateError',
    'VMClientValidationError',
    'VMClientOperationError',
    'ProvisionRequest',
    'VMInfo',
    'VMStatus',
    'ContainerState',
    'ExecResult',
    'CreditBalance',
    'CreditAdjustment',
    'CreditRequestInfo',
    'SystemStats',
    'ContainerInfo',
    'ContainerActionResult'
]
