class VMError(Exception):
    """Base exception for VM operations"""
    pass

class VMNotFoundError(VMError):
    """Raised when a VM record does not exist or is not owned by the caller"""
    pass

class InvalidStateError(VMError):
    """Raised when a VM is not in a state that allows the operation"""

    def __init__(self, message: str, current: str = None):
        super().__init__(message)
        self.current = current

class UserNotFoundError(VMError):
    """Raised when the user behind a request does not exist"""
    pass

class QuotaExceededError(VMError):
    """Raised when an owner already holds the maximum number of VMs"""
    pass

class InsufficientCreditsError(VMError):
    """Raised when an owner's balance is below one billing unit"""
    pass

class PortExhaustedError(VMError):
    """Raised when no host port is free in the configured range"""
    pass

class RuntimeAdapterError(VMError):
    """Raised when the container runtime rejects or fails an operation"""
    pass

class RuntimeInstanceNotFoundError(RuntimeAdapterError):
    """Raised when the container backing a VM no longer exists"""
    pass

class CreditRequestNotFoundError(VMError):
    """Raised when a credit request does not exist or is not visible to the caller"""
    pass
