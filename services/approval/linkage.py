"""
services/approval/linkage.py
Linkage Resolver: decides which entity submission (if any) a payment request funds.

Pure read. Calling it repeatedly against unchanged storage yields the same result.

Resolution order:
1. Explicit entity reference on the payment → look it up under the mapped kind
   (LinkageNotFound if absent there).
2. Otherwise, pending submissions of the mapped kind owned by the payer.
   Exactly one → linked. Several → narrowed by agent identifier when the
   payment carries one. Still zero or several → unlinked, for manual review.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from services.entities import registry
from shared.errors import LinkageAmbiguous, LinkageNotFound, NotFound
from shared.models.models import (
    EntityKind,
    EntitySubmission,
    InstituteDomain,
    PaymentEntityType,
    PaymentRequest,
)
from shared.schemas.schemas import normalize_agent_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KindMapping:
    kind: EntityKind
    domain: Optional[InstituteDomain] = None


# Payment taxonomy → entity taxonomy. `hospital` narrows Institute to the healthcare
# domain; `institute` covers every Institute regardless of domain.
PAYMENT_KIND_MAP: dict[PaymentEntityType, KindMapping] = {
    PaymentEntityType.SHOP: KindMapping(EntityKind.SHOP),
    PaymentEntityType.INSTITUTE: KindMapping(EntityKind.INSTITUTE),
    PaymentEntityType.HOSPITAL: KindMapping(EntityKind.INSTITUTE, InstituteDomain.HEALTHCARE),
    PaymentEntityType.MARKETPLACE: KindMapping(EntityKind.PRODUCT),
}


class LinkageOutcome(str, Enum):
    LINKED = "linked"
    AMBIGUOUS = "ambiguous"     # more than one candidate
    UNMATCHED = "unmatched"     # no candidate


@dataclass
class Linkage:
    payment_id: UUID
    mapping: KindMapping
    outcome: LinkageOutcome
    entity: Optional[EntitySubmission] = None
    candidates: list[EntitySubmission] = field(default_factory=list)

    @property
    def kind(self) -> EntityKind:
        return self.mapping.kind

    @property
    def is_linked(self) -> bool:
        return self.entity is not None

    def ambiguity(self) -> LinkageAmbiguous:
        """The warning a reviewer sees when no unique candidate exists."""
        if self.outcome == LinkageOutcome.AMBIGUOUS:
            detail = (
                f"{len(self.candidates)} pending {self.kind.value} submissions match this payment; "
                "approve the intended one manually or link it explicitly"
            )
        else:
            detail = f"No pending {self.kind.value} submission found for this payer"
        return LinkageAmbiguous(detail, kind="payment", entity_id=self.payment_id)


def map_payment_type(entity_type: PaymentEntityType) -> KindMapping:
    return PAYMENT_KIND_MAP[PaymentEntityType(entity_type)]


def _matches_domain(entity: EntitySubmission, mapping: KindMapping) -> bool:
    return mapping.domain is None or entity.domain == mapping.domain


async def resolve_explicit(
    db: AsyncSession,
    payment: PaymentRequest,
    entity_id: UUID,
) -> EntitySubmission:
    """Look up an explicit reference under the kind/domain the payment type maps to."""
    mapping = map_payment_type(payment.entity_type)
    try:
        entity = await registry.get_entity(db, mapping.kind, entity_id)
    except NotFound as exc:
        raise LinkageNotFound(
            f"Payment references {mapping.kind.value} {entity_id}, which does not exist",
            kind=mapping.kind.value,
            entity_id=entity_id,
        ) from exc

    if not _matches_domain(entity, mapping):
        raise LinkageNotFound(
            f"{mapping.kind.value} {entity_id} is not in the {mapping.domain.value} domain "
            f"required by a {payment.entity_type.value} payment",
            kind=mapping.kind.value,
            entity_id=entity_id,
        )
    return entity


async def resolve(db: AsyncSession, payment: PaymentRequest) -> Linkage:
    """
    Find the entity a payment funds.
    Raises LinkageNotFound only for an invalid explicit reference; ambiguity is
    reported through the returned Linkage, not raised.
    """
    mapping = map_payment_type(payment.entity_type)

    if payment.entity_id is not None:
        entity = await resolve_explicit(db, payment, payment.entity_id)
        return Linkage(payment.id, mapping, LinkageOutcome.LINKED, entity=entity, candidates=[entity])

    candidates = await registry.find_pending_for_owner(
        db, mapping.kind, payment.user_id, domain=mapping.domain
    )

    agent_id = normalize_agent_id(payment.agent_id)
    if len(candidates) > 1 and agent_id:
        narrowed = [c for c in candidates if normalize_agent_id(c.agent_id) == agent_id]
        if len(narrowed) == 1:
            logger.debug(f"Payment {payment.id}: agent id {agent_id} narrowed {len(candidates)} candidates to one")
            return Linkage(payment.id, mapping, LinkageOutcome.LINKED, entity=narrowed[0], candidates=candidates)

    if len(candidates) == 1:
        return Linkage(payment.id, mapping, LinkageOutcome.LINKED, entity=candidates[0], candidates=candidates)

    outcome = LinkageOutcome.AMBIGUOUS if candidates else LinkageOutcome.UNMATCHED
    return Linkage(payment.id, mapping, outcome, candidates=candidates)
