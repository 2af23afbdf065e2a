"""Repository for relational proposal records.

The relational store is authoritative for every mirrored field; this
repository is the only code that reads or writes the ``proposals`` table.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from proposal_sync.database.models import REVIEWED_STATUSES, ProposalRecord, ProposalStatus
from proposal_sync.repositories.base_repository import BaseRepository
from proposal_sync.schemas.proposal import MIRRORED_FIELDS
from proposal_sync.utils.field_mapping import record_to_mirror, to_relational_value, utc_now
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ProposalRepository(BaseRepository[ProposalRecord]):
    """Repository for ProposalRecord operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ProposalRecord)

    async def exists(self, proposal_id: str) -> bool:
        result = await self.session.execute(
            select(ProposalRecord.id).where(ProposalRecord.id == proposal_id)
        )
        return result.scalar_one_or_none() is not None

    async def get_mirrored_fields(self, proposal_id: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        """Read the mirrored field projection of a proposal.

        Args:
            proposal_id: Proposal identifier
            lock: Hold a row lock until the next commit

        Returns:
            Mirrored fields in document-store shape, or None if the row is absent
        """
        record = await self.get_by_id(proposal_id, lock=lock)
        if record is None:
            return None
        return record_to_mirror(record)

    async def apply_fields(self, proposal_id: str, fields: Dict[str, Any]) -> Optional[ProposalRecord]:
        """Write mirrored values (document shape) onto an existing row, or create it.

        Used when the document projection is the only copy of a proposal.

        Args:
            proposal_id: Proposal identifier
            fields: Mirrored field values as stored in the document store

        Returns:
            The created or updated record
        """
        values = {
            name: to_relational_value(name, fields.get(name))
            for name in MIRRORED_FIELDS
            if name in fields
        }
        if values.get("proposal_status") is not None:
            values["proposal_status"] = ProposalStatus(values["proposal_status"])
        else:
            values.pop("proposal_status", None)
        for name in ("created_at", "updated_at"):
            if values.get(name) is None:
                values.pop(name, None)

        try:
            record = await self.get_by_id(proposal_id)
            if record is None:
                record = ProposalRecord(id=proposal_id, **values)
                self.session.add(record)
            else:
                for name, value in values.items():
                    setattr(record, name, value)
            await self.session.flush()
            await self.session.commit()
            return record
        except SQLAlchemyError:
            await self.session.rollback()
            LOGGER.error(
                "Failed to apply mirrored fields",
                exc_info=True,
                extra={"proposal_id": proposal_id},
            )
            raise

    async def update_status(
        self,
        record: ProposalRecord,
        status: ProposalStatus,
        changed_by: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> ProposalRecord:
        """Change the status of a (locked) record and commit.

        Approve/deny stamp ``reviewed_at``; the first move to pending stamps
        ``submitted_at``.
        """
        now = utc_now()
        record.proposal_status = status
        record.updated_by = changed_by
        record.updated_at = now
        if comments is not None:
            record.admin_comments = comments
        if status in REVIEWED_STATUSES:
            record.reviewed_at = now
        if status == ProposalStatus.PENDING and record.submitted_at is None:
            record.submitted_at = now

        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            LOGGER.error(
                "Failed to update proposal status",
                exc_info=True,
                extra={"proposal_id": record.id, "status": status.value},
            )
            raise

        LOGGER.info(
            "Proposal status updated",
            extra={"proposal_id": record.id, "status": status.value, "changed_by": changed_by},
        )
        return record

    async def list_ids(self, limit: int = 500, skip: int = 0) -> List[str]:
        result = await self.session.execute(
            select(ProposalRecord.id).order_by(ProposalRecord.id).offset(skip).limit(limit)
        )
        return list(result.scalars().all())
