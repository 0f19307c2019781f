"""Catalog store: read access to program records."""

import logging

from ..models.enums import ProgramStatus
from ..models.errors import ErrorCode, NotFoundError
from ..models.program import Program
from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


class CatalogStore:
    """Program lookups backed by the programs table."""

    TABLE = "programs"

    def __init__(self, db: DynamoDBService) -> None:
        self._db = db

    async def get_program(self, program_id: str) -> Program:
        """Load a program.

        Raises:
            NotFoundError: PROGRAM_NOT_FOUND if no such program exists.
            PersistenceError: on store failure.
        """
        item = await self._db.run(self._db.get_item, self.TABLE, {"program_id": program_id})
        if item is None:
            raise NotFoundError(
                ErrorCode.PROGRAM_NOT_FOUND, details={"program_id": program_id}
            )
        return Program.from_item(item)

    async def list_programs(self, status: ProgramStatus = ProgramStatus.OPEN) -> list[Program]:
        """Programs with the given status, soonest start first."""
        items = await self._db.run(
            self._db.query_by_gsi, self.TABLE, "status-index", "status", status.value
        )
        return [Program.from_item(item) for item in items]

    async def save_program(self, program: Program) -> Program:
        """Create or replace a program (admin and seeding only)."""
        await self._db.run(self._db.put_item, self.TABLE, program.to_item())
        logger.info("Program %s saved", program.program_id)
        return program
