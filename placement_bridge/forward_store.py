"""SQLite-backed store of forwards that failed after a successful placement."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

import sqlite_utils

from .models import PendingForward, SubmissionResult


class PendingForwardStore:
    """Keep the minimal retry state for forwards awaiting a manual retry."""

    TABLE = "pending_forwards"

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = sqlite_utils.Database(str(db_path))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.TABLE].create(
            {
                "placement_id": str,
                "graph_item_id": str,
                "shared_mailbox": str,
                "reason": str,
                "failed_at": str,
            },
            pk="placement_id",
            if_not_exists=True,
        )

    def record(self, result: SubmissionResult) -> Optional[PendingForward]:
        """Persist the retry state of a partial failure; ignores other results."""
        if not result.forwarding_failed or not result.last_placement_id:
            return None
        pending = PendingForward(
            placement_id=result.last_placement_id,
            graph_item_id=result.last_graph_item_id,
            shared_mailbox=result.last_shared_mailbox or "",
            reason=result.forwarding_failed_reason,
            failed_at=datetime.now(tz=UTC).isoformat(),
        )
        self.db[self.TABLE].upsert(
            {
                "placement_id": pending.placement_id,
                "graph_item_id": pending.graph_item_id,
                "shared_mailbox": pending.shared_mailbox,
                "reason": pending.reason,
                "failed_at": pending.failed_at,
            },
            pk="placement_id",
        )
        return pending

    def get(self, placement_id: str) -> Optional[PendingForward]:
        rows = list(self.db[self.TABLE].rows_where("placement_id = ?", [placement_id]))
        return PendingForward(**rows[0]) if rows else None

    def pending(self) -> list[PendingForward]:
        return [
            PendingForward(**row)
            for row in self.db[self.TABLE].rows_where(order_by="failed_at")
        ]

    def resolve(self, placement_id: str) -> bool:
        table = self.db[self.TABLE]
        if table.count_where("placement_id = ?", [placement_id]) == 0:
            return False
        table.delete_where("placement_id = ?", [placement_id])
        return True
