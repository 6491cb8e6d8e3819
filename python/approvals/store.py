"""
Approval Store

Persistence contract for approval requests. A request is saved only if it is
still at the version the caller read, which serializes concurrent decisions
on the same request. An entity has at most one pending request at a time.
"""

import copy
import threading
from abc import ABC, abstractmethod

from budget.exceptions import ConflictError

from .models import ApprovalEntityType, ApprovalRequest, ApprovalStatus


def pending_conflict(request: ApprovalRequest, existing_id: str | None = None) -> ConflictError:
    """Error for a second pending request on the same entity."""
    details = {"entity_type": request.entity_type.value, "entity_id": request.entity_id}
    if existing_id:
        details["existing_id"] = existing_id
    return ConflictError(
        f"{request.entity_type.value} {request.entity_id} already has a pending approval request",
        details=details,
    )


class ApprovalStore(ABC):
    """Keyed storage for approval requests."""

    @abstractmethod
    def add_request(self, request: ApprovalRequest) -> None:
        """Insert a new request.

        Raises:
            ConflictError: If the id exists, or the entity already has a
                pending request
        """

    @abstractmethod
    def get_request(self, request_id: str) -> ApprovalRequest | None:
        pass

    @abstractmethod
    def list_requests(
        self,
        status: ApprovalStatus | None = None,
        entity_type: ApprovalEntityType | None = None,
        entity_id: str | None = None,
    ) -> list[ApprovalRequest]:
        pass

    @abstractmethod
    def save_request_if_version(self, request: ApprovalRequest, expected_version: int) -> bool:
        """Persist request state and new decisions if still at expected_version.

        Returns:
            True if saved (version is bumped), False on a version conflict
        """


class InMemoryApprovalStore(ApprovalStore):
    """Thread-safe in-process approval store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: dict[str, ApprovalRequest] = {}

    def add_request(self, request: ApprovalRequest) -> None:
        with self._lock:
            if request.id in self._requests:
                raise ConflictError(
                    f"Approval request {request.id} already exists",
                    details={"request_id": request.id},
                )
            for existing in self._requests.values():
                if existing.is_pending and existing.entity_key == request.entity_key:
                    raise pending_conflict(request, existing.id)
            self._requests[request.id] = copy.deepcopy(request)

    def get_request(self, request_id: str) -> ApprovalRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            return copy.deepcopy(request) if request else None

    def list_requests(self, status=None, entity_type=None, entity_id=None) -> list[ApprovalRequest]:
        with self._lock:
            return [
                copy.deepcopy(request)
                for request in sorted(self._requests.values(), key=lambda r: r.created_at)
                if (status is None or request.status == status)
                and (entity_type is None or request.entity_type == entity_type)
                and (entity_id is None or request.entity_id == entity_id)
            ]

    def save_request_if_version(self, request: ApprovalRequest, expected_version: int) -> bool:
        with self._lock:
            stored = self._requests.get(request.id)
            if stored is None or stored.version != expected_version:
                return False
            saved = copy.deepcopy(request)
            saved.version = expected_version + 1
            self._requests[request.id] = saved
            return True
