import logging
from typing import List

from database import Repository, UnitOfWork
from schemas import Laptop, LaptopCreate

logger = logging.getLogger(__name__)


class InventoryStore:
    def __init__(self, uow: UnitOfWork):
        self.uow = uow
        self.laptops: Repository[Laptop] = uow.register(Repository("laptops", Laptop, not_found="Laptop not found"))

    def list(self) -> List[Laptop]:
        return list(self.laptops)

    def get(self, laptop_id: int) -> Laptop:
        return self.laptops.get(laptop_id)

    def set_available(self, laptop_id: int, available: bool) -> None:
        """Flip the availability flag.

        Only the booking engine calls this, from inside its own transaction on
        the ``laptops`` collection; it does not persist anything by itself.
        """
        self.laptops.get(laptop_id).available = available

    async def add(self, payload: LaptopCreate) -> Laptop:
        async with self.uow.transaction("laptops"):
            laptop = Laptop(id=self.laptops.next_id(), available=True, **payload.model_dump())
            self.laptops.add(laptop)
        logger.info("Laptop %s added", laptop.id)
        return laptop

    async def remove(self, laptop_id: int) -> None:
        async with self.uow.transaction("laptops"):
            self.laptops.remove(laptop_id)
        logger.info("Laptop %s removed", laptop_id)
