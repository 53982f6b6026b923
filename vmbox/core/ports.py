from typing import Callable, Iterable, Optional, Set, Tuple
import asyncio
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vmbox.core.exceptions import PortExhaustedError
from vmbox.db.database import DatabaseManager, vm_repository
from vmbox.db.models import VirtualMachine

logger = logging.getLogger(__name__)

class PortAllocator:
    """Hands out host ports from a contiguous range, lowest free first.

    The port lives on the VM record itself: a port is reserved by inserting
    the record that carries it, and released by clearing it on that record.
    The unique constraint on the column is what makes two reservations of the
    same port impossible, across processes as well as within one.
    """

    def __init__(
        self,
        db: DatabaseManager,
        range_start: int,
        range_end: int,
        reserved_ports: Iterable[int] = (),
    ):
        if range_end < range_start:
            raise ValueError("Port range end must not be below its start")
        self.db = db
        self.range_start = range_start
        self.range_end = range_end
        self.reserved_ports = set(reserved_ports)
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return sum(
            1 for port in range(self.range_start, self.range_end + 1)
            if port not in self.reserved_ports
        )

    def _lowest_free(self, taken: Set[int]) -> Optional[int]:
        for port in range(self.range_start, self.range_end + 1):
            if port not in taken and port not in self.reserved_ports:
                return port
        return None

    async def _used_ports(self) -> Set[int]:
        async with self.db.session() as session:
            return await vm_repository.used_ports(session)

    async def reserve(self, build_record: Callable[[int], VirtualMachine]) -> VirtualMachine:
        """Claim the lowest free port by persisting the record built for it"""
        async with self._lock:
            while True:
                used = await self._used_ports()
                port = self._lowest_free(used)
                if port is None:
                    raise PortExhaustedError(
                        f"No free port in range {self.range_start}-{self.range_end}"
                    )

                try:
                    async with self.db.session() as session:
                        record = build_record(port)
                        session.add(record)
                        await session.flush()
                    logger.info(f"Reserved port {port} for VM {record.id}")
                    return record
                except IntegrityError:
                    # Only a lost race for the port is retried
                    if port not in await self._used_ports():
                        raise
                    logger.info(f"Port {port} was claimed concurrently, retrying")

    async def release(self, session: AsyncSession, vm_id: str, port: Optional[int]) -> bool:
        """Free the port held by a VM record, inside the caller's transaction"""
        if port is None:
            return False
        released = await vm_repository.clear_port(session, vm_id, port)
        if released:
            logger.info(f"Released port {port} from VM {vm_id}")
        return released

    async def usage(self) -> Tuple[int, int]:
        """Number of ports in use and total ports available"""
        used = await self._used_ports()
        in_range = [p for p in used if self.range_start <= p <= self.range_end]
        return len(in_range), self.capacity
