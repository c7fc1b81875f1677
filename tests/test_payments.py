"""
tests/test_payments.py
Tests for payment listing, verify/reject decisions with the entity cascade,
reopen and manual linking.
"""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.entities import registry
from services.payments import ledger
from shared.errors import StorageUnavailable
from shared.models.models import (
    AdminAuditLog,
    ApprovalStatus,
    EntityKind,
    InstituteDomain,
    PaymentEntityType,
    PaymentStatus,
    User,
)
from tests.conftest import auth_headers


async def _decide(client: AsyncClient, admin: User, payment_id, status: str, notes: str | None = None):
    return await client.put(
        f"/admin/payments/{payment_id}/status",
        headers=auth_headers(admin),
        json={"status": status, "verification_notes": notes},
    )


# ── Listing ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_requires_admin(client: AsyncClient, user: User):
    response = await client.get("/admin/payments", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_list_most_recent_transaction_first(
    client: AsyncClient, admin_user: User, user: User, make_payment
):
    older = await make_payment(user, PaymentEntityType.SHOP)
    newer = await make_payment(user, PaymentEntityType.MARKETPLACE)

    response = await client.get("/admin/payments", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data["items"]] == [str(newer.id), str(older.id)]
    assert data["total"] == 2
    assert data["page_size"] == settings.PAYMENT_PAGE_SIZE_DEFAULT
    assert data["items"][0]["user"]["username"] == user.username
    assert Decimal(data["items"][0]["amount"]) == Decimal("1500.00")


@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, admin_user: User, user: User, make_entity, make_payment):
    shop = await make_entity(EntityKind.SHOP, user)
    await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.VERIFIED)
    linked = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.VERIFIED, entity_id=shop.id)
    await make_payment(user, PaymentEntityType.HOSPITAL)

    response = await client.get(
        "/admin/payments?status=verified&entity_type=shop&unlinked=false",
        headers=auth_headers(admin_user),
    )
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(linked.id)
    assert data["items"][0]["linked"] is True

    response = await client.get("/admin/payments?entity_type=hospital", headers=auth_headers(admin_user))
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_list_page_size_is_capped(client: AsyncClient, admin_user: User):
    response = await client.get(
        f"/admin/payments?page_size={settings.PAYMENT_PAGE_SIZE_MAX + 1}",
        headers=auth_headers(admin_user),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_duplicate_transaction_ids_are_flagged(
    client: AsyncClient, admin_user: User, user: User, other_user: User, make_payment
):
    await make_payment(user, PaymentEntityType.SHOP, transaction_id="UTR123")
    await make_payment(other_user, PaymentEntityType.SHOP, transaction_id="UTR123")
    unique = await make_payment(user, PaymentEntityType.SHOP, transaction_id="UTR999")

    response = await client.get("/admin/payments", headers=auth_headers(admin_user))
    flags = {item["id"]: item["possible_duplicate"] for item in response.json()["items"]}
    assert flags[str(unique.id)] is False
    assert sorted(flags.values()) == [False, True, True]


@pytest.mark.asyncio
async def test_screenshot_handle_rendered_as_link(
    client: AsyncClient, admin_user: User, user: User, make_payment, monkeypatch
):
    monkeypatch.setattr(settings, "UPLOADS_BASE_URL", "https://cdn.example.com/uploads/")
    payment = await make_payment(user, PaymentEntityType.SHOP, screenshot_file="receipts/abc.png")

    response = await client.get(f"/admin/payments/{payment.id}", headers=auth_headers(admin_user))
    data = response.json()
    assert data["screenshot_file"] == "receipts/abc.png"
    assert data["screenshot_url"] == "https://cdn.example.com/uploads/receipts/abc.png"


@pytest.mark.asyncio
async def test_get_unknown_payment(client: AsyncClient, admin_user: User):
    response = await client.get(f"/admin/payments/{uuid.uuid4()}", headers=auth_headers(admin_user))
    assert response.status_code == 404
    assert response.json()["code"] == "NotFound"
    assert response.json()["kind"] == "payment"


# ── Accept ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_approves_unique_candidate(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is True
    assert data["warnings"] == []
    assert data["payment"]["status"] == "verified"
    assert data["payment"]["entity_id"] == str(shop.id)
    assert data["payment"]["verifier"]["username"] == admin_user.username
    assert data["payment"]["verification_notes"] == "Payment verified and entity approved"
    assert data["entity"]["id"] == str(shop.id)
    assert data["entity"]["status"] == "approved"

    stored_entity = await registry.get_entity(db, EntityKind.SHOP, shop.id)
    assert stored_entity.status == ApprovalStatus.APPROVED
    stored_payment = await ledger.get_payment(db, payment.id)
    assert stored_payment.status == PaymentStatus.VERIFIED
    assert stored_payment.entity_id == shop.id

    actions = (await db.execute(select(AdminAuditLog.action))).scalars().all()
    assert sorted(actions) == ["CASCADE_APPROVE_ENTITY", "VERIFY_PAYMENT"]


@pytest.mark.asyncio
async def test_accept_survives_cascade_and_duplicate_check_failures(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession, monkeypatch
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    async def broken_set_approval(*args, **kwargs):
        raise StorageUnavailable("Entity storage unavailable")

    async def broken_duplicates(*args, **kwargs):
        raise StorageUnavailable("Payment storage unavailable")

    monkeypatch.setattr(registry, "set_approval", broken_set_approval)
    monkeypatch.setattr(ledger, "duplicate_transaction_ids", broken_duplicates)

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["status"] == "verified"
    assert data["payment"]["possible_duplicate"] is False
    assert data["entity"] is None
    assert [w["code"] for w in data["warnings"]] == ["StorageUnavailable"]
    assert data["warnings"][0]["entity_id"] == str(shop.id)

    stored_payment = await ledger.get_payment(db, payment.id)
    assert stored_payment.status == PaymentStatus.VERIFIED


@pytest.mark.asyncio
async def test_accept_with_two_candidates_warns_ambiguous(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    first = await make_entity(EntityKind.SHOP, user)
    second = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["status"] == "verified"
    assert data["payment"]["linked"] is False
    assert data["entity"] is None
    assert [w["code"] for w in data["warnings"]] == ["LinkageAmbiguous"]
    assert data["warnings"][0]["entity_id"] == str(payment.id)

    for shop in (first, second):
        stored = await registry.get_entity(db, EntityKind.SHOP, shop.id)
        assert stored.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_accept_with_no_candidate_warns(
    client: AsyncClient, admin_user: User, user: User, other_user: User, make_entity, make_payment
):
    await make_entity(EntityKind.SHOP, other_user)  # someone else's shop
    payment = await make_payment(user, PaymentEntityType.SHOP)

    response = await _decide(client, admin_user, payment.id, "verified")
    data = response.json()
    assert data["payment"]["status"] == "verified"
    assert [w["code"] for w in data["warnings"]] == ["LinkageAmbiguous"]


@pytest.mark.asyncio
async def test_hospital_payment_approves_healthcare_institute(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    school = await make_entity(EntityKind.INSTITUTE, user, domain=InstituteDomain.EDUCATION)
    hospital = await make_entity(EntityKind.INSTITUTE, user, domain=InstituteDomain.HEALTHCARE)
    payment = await make_payment(user, PaymentEntityType.HOSPITAL)

    response = await _decide(client, admin_user, payment.id, "verified")
    data = response.json()
    assert data["entity"]["id"] == str(hospital.id)
    assert data["entity"]["display_kind"] == "hospital"

    stored_school = await registry.get_entity(db, EntityKind.INSTITUTE, school.id)
    assert stored_school.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_marketplace_payment_approves_product(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    await make_entity(EntityKind.SHOP, user)
    product = await make_entity(EntityKind.PRODUCT, user)
    payment = await make_payment(user, PaymentEntityType.MARKETPLACE)

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.json()["entity"]["id"] == str(product.id)


@pytest.mark.asyncio
async def test_accept_with_dangling_explicit_reference(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP, entity_id=uuid.uuid4())

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["status"] == "verified"
    assert [w["code"] for w in data["warnings"]] == ["LinkageNotFound"]


@pytest.mark.asyncio
async def test_accept_twice_is_idempotent(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)
    await _decide(client, admin_user, payment.id, "verified")

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is False
    assert data["payment"]["status"] == "verified"
    assert data["entity"]["id"] == str(shop.id)
    assert [w["code"] for w in data["warnings"]] == ["InvalidTransition"]

    actions = (await db.execute(select(AdminAuditLog.action))).scalars().all()
    assert len(actions) == 2


@pytest.mark.asyncio
async def test_accept_rejected_payment_is_refused(
    client: AsyncClient, admin_user: User, user: User, make_payment
):
    payment = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.REJECTED)
    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.status_code == 409
    assert response.json()["code"] == "InvalidTransition"


@pytest.mark.asyncio
async def test_completed_payment_is_terminal(
    client: AsyncClient, admin_user: User, user: User, make_payment
):
    payment = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.COMPLETED)

    response = await client.get(f"/admin/payments/{payment.id}", headers=auth_headers(admin_user))
    assert response.json()["status"] == "completed"

    response = await _decide(client, admin_user, payment.id, "rejected")
    assert response.status_code == 409


# ── Reject ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reject_never_touches_entity(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP, entity_id=shop.id)

    response = await _decide(client, admin_user, payment.id, "rejected", "Amount mismatch")
    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["status"] == "rejected"
    assert data["payment"]["verification_notes"] == "Amount mismatch"
    assert data["entity"] is None

    stored = await registry.get_entity(db, EntityKind.SHOP, shop.id)
    assert stored.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_invalid_decision_value(client: AsyncClient, admin_user: User, user: User, make_payment):
    payment = await make_payment(user, PaymentEntityType.SHOP)
    response = await _decide(client, admin_user, payment.id, "completed")
    assert response.status_code == 422


# ── Reopen ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reopen_then_accept(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)
    await _decide(client, admin_user, payment.id, "rejected")

    response = await client.post(
        f"/admin/payments/{payment.id}/reopen",
        headers=auth_headers(admin_user),
        json={"reason": "Receipt was legible after all"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is True
    assert data["payment"]["status"] == "pending"
    assert data["payment"]["verified_by_id"] is None

    response = await _decide(client, admin_user, payment.id, "verified")
    assert response.json()["entity"]["id"] == str(shop.id)

    actions = (await db.execute(select(AdminAuditLog.action))).scalars().all()
    assert "REOPEN_PAYMENT" in actions


@pytest.mark.asyncio
async def test_reopen_verified_payment_is_refused(
    client: AsyncClient, admin_user: User, user: User, make_payment
):
    payment = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.VERIFIED)
    response = await client.post(
        f"/admin/payments/{payment.id}/reopen",
        headers=auth_headers(admin_user),
        json={"reason": "Changed my mind"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reopen_requires_reason(client: AsyncClient, admin_user: User, user: User, make_payment):
    payment = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.REJECTED)
    response = await client.post(
        f"/admin/payments/{payment.id}/reopen", headers=auth_headers(admin_user), json={"reason": ""}
    )
    assert response.status_code == 422


# ── Manual Link ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_link_verified_payment_approves_entity(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    await make_entity(EntityKind.SHOP, user)
    intended = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)
    await _decide(client, admin_user, payment.id, "verified")  # ambiguous, stays unlinked

    response = await client.post(
        f"/admin/payments/{payment.id}/link",
        headers=auth_headers(admin_user),
        json={"entity_id": str(intended.id)},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is True
    assert data["payment"]["entity_id"] == str(intended.id)
    assert data["entity"]["status"] == "approved"

    stored = await registry.get_entity(db, EntityKind.SHOP, intended.id)
    assert stored.status == ApprovalStatus.APPROVED


@pytest.mark.asyncio
async def test_link_pending_payment_only_records_link(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    response = await client.post(
        f"/admin/payments/{payment.id}/link",
        headers=auth_headers(admin_user),
        json={"entity_id": str(shop.id)},
    )
    data = response.json()
    assert data["payment"]["status"] == "pending"
    assert data["payment"]["entity_id"] == str(shop.id)

    stored = await registry.get_entity(db, EntityKind.SHOP, shop.id)
    assert stored.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_link_to_wrong_kind_is_not_found(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    product = await make_entity(EntityKind.PRODUCT, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    response = await client.post(
        f"/admin/payments/{payment.id}/link",
        headers=auth_headers(admin_user),
        json={"entity_id": str(product.id)},
    )
    assert response.status_code == 404
    assert response.json()["code"] == "LinkageNotFound"


@pytest.mark.asyncio
async def test_relink_to_different_entity_is_refused(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    shop = await make_entity(EntityKind.SHOP, user)
    other = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP, entity_id=shop.id)

    response = await client.post(
        f"/admin/payments/{payment.id}/link",
        headers=auth_headers(admin_user),
        json={"entity_id": str(other.id)},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_link_rejected_payment_is_refused(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP, status=PaymentStatus.REJECTED)

    response = await client.post(
        f"/admin/payments/{payment.id}/link",
        headers=auth_headers(admin_user),
        json={"entity_id": str(shop.id)},
    )
    assert response.status_code == 409


# ── Linkage Preview ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_linkage_preview_is_read_only(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment, db: AsyncSession
):
    shop = await make_entity(EntityKind.SHOP, user)
    payment = await make_payment(user, PaymentEntityType.SHOP)

    for _ in range(2):
        response = await client.get(f"/admin/payments/{payment.id}/linkage", headers=auth_headers(admin_user))
        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "linked"
        assert data["entity"]["id"] == str(shop.id)
        assert data["kind"] == "shop"

    stored = await registry.get_entity(db, EntityKind.SHOP, shop.id)
    assert stored.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_linkage_preview_ambiguous_and_not_found(
    client: AsyncClient, admin_user: User, user: User, make_entity, make_payment
):
    first = await make_entity(EntityKind.INSTITUTE, user, domain=InstituteDomain.HEALTHCARE)
    second = await make_entity(EntityKind.INSTITUTE, user, domain=InstituteDomain.HEALTHCARE)
    ambiguous = await make_payment(user, PaymentEntityType.HOSPITAL)
    dangling = await make_payment(user, PaymentEntityType.HOSPITAL, entity_id=uuid.uuid4())

    response = await client.get(f"/admin/payments/{ambiguous.id}/linkage", headers=auth_headers(admin_user))
    data = response.json()
    assert data["outcome"] == "ambiguous"
    assert data["domain"] == "healthcare"
    assert sorted(data["candidate_ids"]) == sorted([str(first.id), str(second.id)])

    response = await client.get(f"/admin/payments/{dangling.id}/linkage", headers=auth_headers(admin_user))
    assert response.json()["outcome"] == "not_found"
