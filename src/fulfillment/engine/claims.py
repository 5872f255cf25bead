"""Warranty claims.

Claims are filed against the caller's own, unexpired warranty. Admins may
move a claim between any of the four statuses; there is no transition table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import aiosqlite

from fulfillment.db import crud
from fulfillment.db.database import run_in_transaction
from fulfillment.db.models import CLAIM_STATUSES, Claim, Warranty
from fulfillment.engine.errors import (
    ClaimNotFound,
    ValidationError,
    WarrantyExpired,
    WarrantyNotFound,
)
from fulfillment.engine.ports import Clock, IdGenerator, SystemClock, UuidIdGenerator
from fulfillment.services import notifier as notices
from fulfillment.services.notifier import Notifier
from fulfillment.utils.logger import get_logger

_logger = get_logger(__name__)

MIN_DESCRIPTION_LENGTH = 10


@dataclass
class ClaimEngine:
    clock: Clock = field(default_factory=SystemClock)
    ids: IdGenerator = field(default_factory=UuidIdGenerator)
    notifier: Notifier = field(default_factory=Notifier)

    async def create_claim(
        self,
        user_id: str,
        warranty_id: str,
        issue_description: str,
        image_url: Optional[str] = None,
    ) -> Claim:
        description = (issue_description or "").strip()

        async def work(conn: aiosqlite.Connection) -> Tuple[Claim, Warranty]:
            now = self.clock.now()
            warranty = await crud.fetch_warranty(conn, warranty_id)
            if warranty is None or warranty.user_id != user_id:
                raise WarrantyNotFound(warranty_id)
            if now > warranty.expiry_date:
                raise WarrantyExpired(warranty_id)
            if len(description) < MIN_DESCRIPTION_LENGTH:
                raise ValidationError(
                    f"Issue description must be at least {MIN_DESCRIPTION_LENGTH} characters"
                )
            claim = Claim(
                claim_id=self.ids.new_id("clm"),
                warranty_id=warranty_id,
                issue_description=description,
                status="pending",
                admin_notes=None,
                image_url=image_url,
                created_at=now,
                updated_at=now,
            )
            await crud.insert_claim(conn, claim)
            return claim, warranty

        claim, warranty = await run_in_transaction(work, label="create_claim")
        _logger.info(f"claim {claim.claim_id} filed on warranty {warranty_id}")
        self.notifier.emit(
            notices.admin_alert(
                "New Warranty Claim Submitted",
                claim_id=claim.claim_id,
                warranty_id=warranty_id,
                user_id=user_id,
                product_id=warranty.product_id,
                issue_description=description,
            )
        )
        return claim

    async def update_claim_status(
        self, claim_id: str, status: str, admin_notes: Optional[str] = None
    ) -> Claim:
        """Privileged. Any status may follow any other."""
        if status not in CLAIM_STATUSES:
            raise ValidationError(f"Invalid claim status: {status}")

        async def work(conn: aiosqlite.Connection) -> Tuple[Claim, str]:
            if not await crud.set_claim_status(
                conn, claim_id, status, admin_notes, self.clock.now()
            ):
                raise ClaimNotFound(claim_id)
            claim = await crud.fetch_claim(conn, claim_id)
            warranty = await crud.fetch_warranty(conn, claim.warranty_id)
            return claim, warranty.user_id

        claim, owner = await run_in_transaction(work, label="update_claim_status")
        _logger.info(f"claim {claim_id} -> {status}")
        self.notifier.emit(notices.claim_status_update(claim, owner))
        return claim

    async def get_claim(self, claim_id: str, user_id: Optional[str] = None) -> Claim:
        claim = await crud.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFound(claim_id)
        if user_id is not None:
            warranty = await crud.get_warranty(claim.warranty_id)
            if warranty is None or warranty.user_id != user_id:
                raise ClaimNotFound(claim_id)
        return claim

    async def list_claims(
        self, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Claim]:
        return await crud.list_claims(user_id, status)
