"""VM lifecycle state machine.

``creating -> running <-> stopped -> terminated``, with ``error`` reachable
from ``running``/``stopped`` when reconciliation cannot find the container and
``terminated`` reachable from every other state.

Every write is a conditional update against the status the operation read
(see :meth:`VMRepository.transition`), so a concurrent operation on the same
VM makes the later one fail with :class:`InvalidStateError` instead of
overwriting it. A per-VM lock additionally keeps a single process from
issuing duplicate runtime calls for one VM.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import weakref

from sqlalchemy.ext.asyncio import AsyncSession

from vmbox.core.credits import CreditMeter
from vmbox.core.docker import ContainerSpec, ContainerState
from vmbox.core.exceptions import (
    InsufficientCreditsError,
    InvalidStateError,
    QuotaExceededError,
    RuntimeAdapterError,
    UserNotFoundError,
    VMNotFoundError,
)
from vmbox.core.images import ImageManager
from vmbox.core.metadata import LABEL_OWNER, LABEL_VM_NAME, VMStatus, utcnow
from vmbox.core.ports import PortAllocator
from vmbox.db.database import DatabaseManager, user_repository, vm_repository
from vmbox.db.models import VirtualMachine

logger = logging.getLogger(__name__)

TerminationListener = Callable[[str], Awaitable[None]]

@dataclass
class VMStatusReport:
    vm: VirtualMachine
    container: Optional[ContainerState] = None

class VMLifecycleManager:
    def __init__(
        self,
        db: DatabaseManager,
        runtime,
        ports: PortAllocator,
        credits: CreditMeter,
        images: Optional[ImageManager] = None,
        *,
        max_vms_per_user: int = 3,
        default_image: str = "ubuntu:22.04",
        default_memory_limit: int = 512 * 1024 * 1024,
        default_cpu_shares: int = 512,
        pids_limit: int = 100,
        stop_timeout: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.runtime = runtime
        self.ports = ports
        self.credits = credits
        self.images = images or ImageManager(runtime)
        self.max_vms_per_user = max_vms_per_user
        self.default_image = default_image
        self.default_memory_limit = default_memory_limit
        self.default_cpu_shares = default_cpu_shares
        self.pids_limit = pids_limit
        self.stop_timeout = stop_timeout
        self.clock = clock
        self._vm_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._owner_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._termination_listeners: List[TerminationListener] = []

    @property
    def billing_unit(self) -> int:
        """Minimum balance needed to provision or start a VM"""
        return self.credits.hourly_rate

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._termination_listeners.append(listener)

    def _lock(self, registry: weakref.WeakValueDictionary, key: Any) -> asyncio.Lock:
        lock = registry.get(key)
        if lock is None:
            lock = asyncio.Lock()
            registry[key] = lock
        return lock

    # ------------------------------------------------------------------ reads

    async def _load(self, vm_id: str, owner_id: Optional[int]) -> VirtualMachine:
        """Fetch a record; owner_id None skips the ownership check (admin)"""
        async with self.db.session() as session:
            if owner_id is None:
                vm = await vm_repository.get(session, vm_id)
            else:
                vm = await vm_repository.get_owned(session, vm_id, owner_id)
        if vm is None:
            raise VMNotFoundError(f"VM {vm_id} not found")
        return vm

    async def get(self, vm_id: str, owner_id: Optional[int]) -> VirtualMachine:
        return await self._load(vm_id, owner_id)

    async def list_for_owner(self, owner_id: int) -> List[VirtualMachine]:
        async with self.db.session() as session:
            return await vm_repository.list_for_owner(session, owner_id)

    async def list_all(self) -> List[VirtualMachine]:
        async with self.db.session() as session:
            return await vm_repository.list_recent(session)

    # ------------------------------------------------------------ transitions

    def _elapsed_seconds(self, vm: VirtualMachine, until: datetime) -> int:
        if vm.last_started_at is None:
            return 0
        return max(0, int((until - vm.last_started_at).total_seconds()))

    async def _leave_running(
        self,
        session: AsyncSession,
        vm: VirtualMachine,
        target: VMStatus,
        at: datetime,
        **values
    ) -> bool:
        """Close the current running interval: accumulate runtime and bill it once"""
        elapsed = self._elapsed_seconds(vm, at)
        charge = self.credits.compute_charge(elapsed)
        applied = await vm_repository.transition(
            session,
            vm.id,
            VMStatus.RUNNING.value,
            status=target.value,
            ip_address=None,
            last_stopped_at=at,
            total_runtime_seconds=VirtualMachine.total_runtime_seconds + elapsed,
            credits_consumed=VirtualMachine.credits_consumed + charge,
            **values
        )
        if applied:
            await self.credits.charge(session, vm.owner_id, elapsed)
            logger.info(
                f"VM {vm.id} left running after {elapsed}s, "
                f"{charge} credits billed, now {target.value}"
            )
        return applied

    async def provision(
        self,
        owner_id: int,
        name: str,
        image: Optional[str] = None,
        memory_limit: Optional[int] = None,
        cpu_shares: Optional[int] = None,
    ) -> VirtualMachine:
        """Create and start a new VM for owner"""
        image = image or self.default_image
        memory_limit = memory_limit or self.default_memory_limit
        cpu_shares = cpu_shares or self.default_cpu_shares

        async with self._lock(self._owner_locks, owner_id):
            async with self.db.session() as session:
                active = await vm_repository.count_active_for_owner(session, owner_id)
                balance = await user_repository.get_credits(session, owner_id)

            if balance is None:
                raise UserNotFoundError(f"User {owner_id} not found")
            if active >= self.max_vms_per_user:
                raise QuotaExceededError(f"Maximum VM limit ({self.max_vms_per_user}) reached")
            if balance < self.billing_unit:
                raise InsufficientCreditsError("Insufficient credits to provision VM")

            await self.images.ensure_image(image)
            workspace = self.runtime.ensure_workspace(str(owner_id))

            record = await self.ports.reserve(
                lambda port: VirtualMachine(
                    owner_id=owner_id,
                    name=name,
                    status=VMStatus.CREATING.value,
                    port=port,
                    image=image,
                    memory_limit=memory_limit,
                    cpu_shares=cpu_shares,
                )
            )

        spec = ContainerSpec(
            image=image,
            name=f"vmbox-{owner_id}-{name}-{record.id[:8]}",
            hostname=name,
            host_port=record.port,
            workspace_path=workspace,
            memory_limit=memory_limit,
            cpu_shares=cpu_shares,
            pids_limit=self.pids_limit,
            labels={LABEL_OWNER: str(owner_id), LABEL_VM_NAME: name},
        )

        handle = None
        try:
            handle = await self.runtime.create(spec)
            async with self.db.session() as session:
                recorded = await vm_repository.transition(
                    session, record.id, VMStatus.CREATING.value, runtime_handle=handle
                )
        except Exception:
            logger.error(f"Provisioning VM {record.id} failed, rolling back")
            await self._discard_provision(record, handle)
            raise
        if not recorded:
            # Terminated while the container was being created; nothing references it
            await self._abandon_container(record.id, handle)
            raise InvalidStateError(f"VM {record.id} changed state while provisioning")

        try:
            await self.runtime.start(handle)
            state = await self.runtime.inspect(handle)
        except Exception:
            logger.error(f"Provisioning VM {record.id} failed, rolling back")
            await self._discard_provision(record, handle)
            raise

        now = self.clock()
        async with self.db.session() as session:
            applied = await vm_repository.transition(
                session,
                record.id,
                VMStatus.CREATING.value,
                status=VMStatus.RUNNING.value,
                ip_address=state.ip_address,
                last_started_at=now,
            )
        if not applied:
            await self._abandon_container(record.id, handle)
            raise InvalidStateError(f"VM {record.id} changed state while provisioning")

        logger.info(f"Provisioned VM {record.id} ({name}) for user {owner_id} on port {record.port}")
        return await self._load(record.id, None)

    async def _abandon_container(self, vm_id: str, handle: str) -> None:
        try:
            await self.runtime.remove(handle, force=True)
        except Exception as e:
            logger.warning(f"Failed to remove container {handle} of VM {vm_id}: {str(e)}")

    async def _discard_provision(self, record: VirtualMachine, handle: Optional[str]) -> None:
        """Undo a failed provision: drop the container and the record holding the port"""
        if handle:
            await self._abandon_container(record.id, handle)
        async with self.db.session() as session:
            discarded = await vm_repository.delete_if_status(session, record.id, VMStatus.CREATING.value)
        if discarded:
            logger.info(f"Discarded VM {record.id}, port {record.port} released")

    async def start(self, vm_id: str, owner_id: int) -> VirtualMachine:
        """Start a stopped VM"""
        async with self._lock(self._vm_locks, vm_id):
            vm = await self._load(vm_id, owner_id)
            if vm.status != VMStatus.STOPPED.value:
                raise InvalidStateError(f"Cannot start a VM that is {vm.status}", vm.status)
            if not await self.credits.has_sufficient_balance(vm.owner_id, self.billing_unit):
                raise InsufficientCreditsError("Insufficient credits")

            await self.runtime.start(vm.runtime_handle)
            state = await self.runtime.inspect(vm.runtime_handle)

            now = self.clock()
            async with self.db.session() as session:
                applied = await vm_repository.transition(
                    session,
                    vm.id,
                    VMStatus.STOPPED.value,
                    status=VMStatus.RUNNING.value,
                    ip_address=state.ip_address,
                    last_started_at=now,
                )
            if not applied:
                raise InvalidStateError(f"VM {vm.id} changed state while starting")

            logger.info(f"Started VM {vm.id}")
            return await self._load(vm.id, None)

    async def stop(self, vm_id: str, owner_id: int) -> VirtualMachine:
        """Stop a running VM and bill the interval"""
        async with self._lock(self._vm_locks, vm_id):
            vm = await self._load(vm_id, owner_id)
            if vm.status != VMStatus.RUNNING.value:
                raise InvalidStateError(f"Cannot stop a VM that is {vm.status}", vm.status)

            await self.runtime.stop(vm.runtime_handle, timeout=self.stop_timeout)

            now = self.clock()
            async with self.db.session() as session:
                applied = await self._leave_running(session, vm, VMStatus.STOPPED, now)
            if not applied:
                raise InvalidStateError(f"VM {vm.id} changed state while stopping")
            return await self._load(vm.id, None)

    async def terminate(self, vm_id: str, owner_id: Optional[int] = None) -> VirtualMachine:
        """Tear down a VM; always ends terminated once the record exists"""
        async with self._lock(self._vm_locks, vm_id):
            vm = await self._load(vm_id, owner_id)
            if vm.status == VMStatus.TERMINATED.value:
                return vm
            if vm.runtime_handle:
                await self._teardown_container(vm.runtime_handle)
            await self._finalize_termination(vm.id)

        await self._notify_terminated(vm_id)
        return await self._load(vm_id, None)

    async def _teardown_container(self, handle: str) -> None:
        """Best-effort stop and remove; failures are logged, never raised"""
        try:
            state = await self.runtime.inspect(handle)
            if state.running:
                await self.runtime.stop(handle, timeout=self.stop_timeout)
        except Exception as e:
            logger.warning(f"Error stopping container {handle}: {str(e)}")
        try:
            await self.runtime.remove(handle, force=True)
        except Exception as e:
            logger.warning(f"Error removing container {handle}: {str(e)}")

    async def _finalize_termination(self, vm_id: str) -> None:
        """Persist terminated and release the port, retrying on concurrent changes"""
        while True:
            now = self.clock()
            async with self.db.session() as session:
                current = await vm_repository.get(session, vm_id)
                if current is None or current.status == VMStatus.TERMINATED.value:
                    return
                if current.status == VMStatus.RUNNING.value:
                    applied = await self._leave_running(
                        session, current, VMStatus.TERMINATED, now, terminated_at=now
                    )
                else:
                    applied = await vm_repository.transition(
                        session,
                        vm_id,
                        current.status,
                        status=VMStatus.TERMINATED.value,
                        ip_address=None,
                        terminated_at=now,
                    )
                if applied:
                    await self.ports.release(session, vm_id, current.port)
                    logger.info(f"Terminated VM {vm_id}")
                    return
            logger.debug(f"VM {vm_id} changed state during termination, retrying")

    async def _notify_terminated(self, vm_id: str) -> None:
        for listener in self._termination_listeners:
            try:
                await listener(vm_id)
            except Exception as e:
                logger.error(f"Termination listener failed for VM {vm_id}: {str(e)}")

    # --------------------------------------------------------- reconciliation

    async def status(self, vm_id: str, owner_id: Optional[int]) -> VMStatusReport:
        """Inspect the container and bring the record in line with it"""
        async with self._lock(self._vm_locks, vm_id):
            vm = await self._load(vm_id, owner_id)
            # A creating VM is still owned by the provision call
            if vm.status in (VMStatus.TERMINATED.value, VMStatus.CREATING.value) or not vm.runtime_handle:
                return VMStatusReport(vm=vm)

            try:
                observed = await self.runtime.inspect(vm.runtime_handle)
            except RuntimeAdapterError as e:
                logger.warning(f"Container for VM {vm.id} unavailable: {str(e)}")
                await self._mark_error(vm)
                return VMStatusReport(vm=await self._load(vm.id, None))

            await self._reconcile(vm, observed)
            return VMStatusReport(vm=await self._load(vm.id, None), container=observed)

    async def _mark_error(self, vm: VirtualMachine) -> None:
        now = self.clock()
        async with self.db.session() as session:
            if vm.status == VMStatus.RUNNING.value:
                await self._leave_running(session, vm, VMStatus.ERROR, now)
            elif vm.status == VMStatus.STOPPED.value:
                await vm_repository.transition(
                    session, vm.id, VMStatus.STOPPED.value, status=VMStatus.ERROR.value
                )

    async def _reconcile(self, vm: VirtualMachine, observed: ContainerState) -> None:
        now = self.clock()
        async with self.db.session() as session:
            if observed.running and vm.status in (VMStatus.STOPPED.value, VMStatus.ERROR.value):
                applied = await vm_repository.transition(
                    session,
                    vm.id,
                    vm.status,
                    status=VMStatus.RUNNING.value,
                    ip_address=observed.ip_address,
                    last_started_at=now,
                )
                if applied:
                    logger.info(f"Reconciled VM {vm.id}: {vm.status} -> running")
            elif not observed.running and vm.status == VMStatus.RUNNING.value:
                stopped_at = now
                if observed.finished_at and vm.last_started_at and vm.last_started_at <= observed.finished_at <= now:
                    stopped_at = observed.finished_at
                await self._leave_running(session, vm, VMStatus.STOPPED, stopped_at)
            elif not observed.running and vm.status == VMStatus.ERROR.value:
                applied = await vm_repository.transition(
                    session, vm.id, VMStatus.ERROR.value, status=VMStatus.STOPPED.value
                )
                if applied:
                    logger.info(f"Reconciled VM {vm.id}: error -> stopped")

    async def reconcile_all(self) -> int:
        """Reconcile every live VM; failures are logged per VM"""
        async with self.db.session() as session:
            active = await vm_repository.list_active(session)

        reconciled = 0
        for vm in active:
            if vm.status == VMStatus.CREATING.value or not vm.runtime_handle:
                continue
            try:
                await self.status(vm.id, None)
                reconciled += 1
            except Exception as e:
                logger.error(f"Failed to reconcile VM {vm.id}: {str(e)}")
        return reconciled

    async def find_orphans(self) -> List[Dict[str, Any]]:
        """Managed containers that no live VM record points at"""
        containers = await self.runtime.list_all(managed_only=True)
        async with self.db.session() as session:
            active = await vm_repository.list_active(session)
        known = {vm.runtime_handle for vm in active if vm.runtime_handle}
        return [c for c in containers if c["container_id"] not in known]

    # ------------------------------------------------------------------ misc

    async def exec_command(self, vm_id: str, owner_id: int, command: List[str]) -> Dict[str, Any]:
        """Run a one-shot command inside a running VM"""
        vm = await self._load(vm_id, owner_id)
        if vm.status != VMStatus.RUNNING.value:
            raise InvalidStateError("VM is not running", vm.status)
        exit_code, output = await self.runtime.exec_run(vm.runtime_handle, command)
        return {"output": output, "exit_code": exit_code}

    # ----------------------------------------------------------------- admin

    async def admin_force_stop(self, handle: str) -> Optional[VirtualMachine]:
        """Stop any container immediately and settle its VM record if there is one"""
        await self.runtime.stop(handle, timeout=0)

        async with self.db.session() as session:
            vm = await vm_repository.get_by_handle(session, handle)
        if vm is None:
            logger.info(f"Force-stopped unmanaged container {handle}")
            return None

        async with self._lock(self._vm_locks, vm.id):
            vm = await self._load(vm.id, None)
            if vm.status == VMStatus.RUNNING.value:
                async with self.db.session() as session:
                    await self._leave_running(session, vm, VMStatus.STOPPED, self.clock())
        logger.info(f"Force-stopped container {handle} of VM {vm.id}")
        return await self._load(vm.id, None)

    async def admin_force_remove(self, handle: str) -> Optional[VirtualMachine]:
        """Remove any container and terminate its VM record if there is one"""
        await self.runtime.remove(handle, force=True)

        async with self.db.session() as session:
            vm = await vm_repository.get_by_handle(session, handle)
        if vm is None:
            logger.info(f"Force-removed unmanaged container {handle}")
            return None

        if vm.status != VMStatus.TERMINATED.value:
            async with self._lock(self._vm_locks, vm.id):
                await self._finalize_termination(vm.id)
            await self._notify_terminated(vm.id)
        logger.info(f"Force-removed container {handle} of VM {vm.id}")
        return await self._load(vm.id, None)
