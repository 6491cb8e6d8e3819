"""
SQL Approval Store

Approval requests and their decision log in two tables sharing the ledger's
metadata, so one `metadata.create_all()` builds the whole schema.
"""

import logging
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    and_,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from budget.exceptions import ConflictError, StorageError
from budget.sql_store import metadata, translate_errors

from .models import (
    ApprovalDecision,
    ApprovalEntityType,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStatus,
    Decision,
    Priority,
)
from .store import ApprovalStore, pending_conflict

logger = logging.getLogger(__name__)

approval_requests = Table(
    "approval_requests",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("entity_type", String(20), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("title", String(255)),
    Column("priority", String(10), nullable=False),
    Column("status", String(10), nullable=False),
    Column("requester_id", String(64), nullable=False),
    Column("level_index", Integer, nullable=False, default=0),
    Column("levels", JSON, nullable=False),
    Column("notes", Text),
    Column("request_data", JSON),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("completed_at", DateTime),
    Column("version", Integer, nullable=False, default=0),
    Index("idx_approval_requests_entity", "entity_type", "entity_id"),
    Index("idx_approval_requests_status", "status"),
)

# At most one PENDING request per entity
Index(
    "uk_approval_requests_pending_entity",
    approval_requests.c.entity_type,
    approval_requests.c.entity_id,
    unique=True,
    postgresql_where=approval_requests.c.status == ApprovalStatus.PENDING.value,
    sqlite_where=approval_requests.c.status == ApprovalStatus.PENDING.value,
)

approval_decisions = Table(
    "approval_decisions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_id", String(36), ForeignKey("approval_requests.id"), nullable=False),
    Column("level_order", Integer, nullable=False),
    Column("approver_id", String(64), nullable=False),
    Column("decision", String(10), nullable=False),
    Column("comment", Text),
    Column("decided_at", DateTime, nullable=False),
    Index("idx_approval_decisions_request", "request_id"),
)


def _decision_values(request_id: str, decision: ApprovalDecision) -> dict:
    return {
        "request_id": request_id,
        "level_order": decision.level_order,
        "approver_id": decision.approver_id,
        "decision": decision.decision.value,
        "comment": decision.comment,
        "decided_at": decision.decided_at,
    }


class SqlApprovalStore(ApprovalStore):
    """Approval store backed by a relational database."""

    def __init__(self, engine: Engine, create_tables: bool = False):
        self.engine = engine
        if create_tables:
            metadata.create_all(engine)

    def _load_decisions(self, conn: Connection, request_ids: list[str]) -> dict[str, list[ApprovalDecision]]:
        decisions: dict[str, list[ApprovalDecision]] = {request_id: [] for request_id in request_ids}
        if not request_ids:
            return decisions

        rows = conn.execute(
            select(approval_decisions)
            .where(approval_decisions.c.request_id.in_(request_ids))
            .order_by(approval_decisions.c.id)
        ).fetchall()
        for row in rows:
            decisions[row.request_id].append(
                ApprovalDecision(
                    level_order=row.level_order,
                    approver_id=row.approver_id,
                    decision=Decision(row.decision),
                    comment=row.comment,
                    decided_at=row.decided_at,
                )
            )
        return decisions

    def _to_request(self, row, decisions: list[ApprovalDecision]) -> ApprovalRequest:
        return ApprovalRequest(
            id=row.id,
            entity_type=ApprovalEntityType(row.entity_type),
            entity_id=row.entity_id,
            levels=[ApprovalLevel(**level) for level in row.levels],
            requester_id=row.requester_id,
            level_index=row.level_index,
            status=ApprovalStatus(row.status),
            decisions=decisions,
            title=row.title,
            priority=Priority(row.priority),
            notes=row.notes,
            request_data=row.request_data or {},
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            version=row.version,
        )

    def add_request(self, request: ApprovalRequest) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(approval_requests).values(
                        id=request.id,
                        entity_type=request.entity_type.value,
                        entity_id=request.entity_id,
                        title=request.title,
                        priority=request.priority.value,
                        status=request.status.value,
                        requester_id=request.requester_id,
                        level_index=request.level_index,
                        levels=[level.to_dict() for level in request.levels],
                        notes=request.notes,
                        request_data=request.request_data,
                        created_at=request.created_at,
                        updated_at=request.updated_at,
                        completed_at=request.completed_at,
                        version=request.version,
                    )
                )
        except IntegrityError as e:
            pending = self.list_requests(
                status=ApprovalStatus.PENDING,
                entity_type=request.entity_type,
                entity_id=request.entity_id,
            )
            if pending:
                raise pending_conflict(request, pending[0].id) from e
            raise ConflictError(
                f"Approval request {request.id} already exists",
                details={"request_id": request.id},
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert approval request: {e}")
            raise StorageError("Storage failure during add_request") from e

    def get_request(self, request_id: str) -> ApprovalRequest | None:
        with translate_errors("get_request"), self.engine.connect() as conn:
            row = conn.execute(
                select(approval_requests).where(approval_requests.c.id == request_id)
            ).first()
            if row is None:
                return None
            decisions = self._load_decisions(conn, [request_id])
        return self._to_request(row, decisions[request_id])

    def list_requests(self, status=None, entity_type=None, entity_id=None) -> list[ApprovalRequest]:
        query = select(approval_requests).order_by(approval_requests.c.created_at)
        if status is not None:
            query = query.where(approval_requests.c.status == status.value)
        if entity_type is not None:
            query = query.where(approval_requests.c.entity_type == entity_type.value)
        if entity_id is not None:
            query = query.where(approval_requests.c.entity_id == entity_id)

        with translate_errors("list_requests"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            decisions = self._load_decisions(conn, [row.id for row in rows])
        return [self._to_request(row, decisions[row.id]) for row in rows]

    def save_request_if_version(self, request: ApprovalRequest, expected_version: int) -> bool:
        with translate_errors("save_request"), self.engine.connect() as conn:
            with conn.begin() as trans:
                result = conn.execute(
                    update(approval_requests)
                    .where(
                        and_(
                            approval_requests.c.id == request.id,
                            approval_requests.c.version == expected_version,
                        )
                    )
                    .values(
                        status=request.status.value,
                        level_index=request.level_index,
                        priority=request.priority.value,
                        notes=request.notes,
                        updated_at=datetime.now(),
                        completed_at=request.completed_at,
                        version=approval_requests.c.version + 1,
                    )
                )
                if result.rowcount != 1:
                    trans.rollback()
                    return False

                # Decision log is append-only; only rows past the stored count are new
                stored_count = conn.execute(
                    select(func.count())
                    .select_from(approval_decisions)
                    .where(approval_decisions.c.request_id == request.id)
                ).scalar_one()
                for decision in request.decisions[stored_count:]:
                    conn.execute(
                        insert(approval_decisions).values(**_decision_values(request.id, decision))
                    )
                return True
