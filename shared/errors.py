"""
shared/errors.py
Domain error taxonomy for the review workflow.

Errors raised by the registry, ledger, resolver and orchestrator carry enough
detail (kind, id, reason) for a reviewer to retry or resolve manually.
main.py renders them as JSON; the orchestrator also downgrades some of them
to warnings attached to an otherwise successful decision.
"""

from typing import Any, Optional
from uuid import UUID


class ConsoleError(Exception):
    """Base class. `code` is the stable machine-readable name."""

    code = "ConsoleError"
    status_code = 400

    def __init__(
        self,
        detail: str,
        *,
        kind: Optional[str] = None,
        entity_id: Optional[UUID | str] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.kind = kind
        self.entity_id = str(entity_id) if entity_id is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "detail": self.detail,
            "kind": self.kind,
            "entity_id": self.entity_id,
        }

    def __repr__(self) -> str:
        return f"{self.code}({self.detail!r}, kind={self.kind}, id={self.entity_id})"


class NotFound(ConsoleError):
    code = "NotFound"
    status_code = 404


class InvalidTransition(ConsoleError):
    code = "InvalidTransition"
    status_code = 409


class LinkageAmbiguous(ConsoleError):
    """Resolver found zero or several candidates. Normally a warning, not a failure."""
    code = "LinkageAmbiguous"
    status_code = 409


class LinkageNotFound(ConsoleError):
    """An explicit entity reference on a payment does not exist under the mapped kind."""
    code = "LinkageNotFound"
    status_code = 404


class StorageUnavailable(ConsoleError):
    code = "StorageUnavailable"
    status_code = 503


class PaymentUpdateFailed(StorageUnavailable):
    """Primary payment write failed during accept; nothing else was attempted."""
    code = "PaymentUpdateFailed"
