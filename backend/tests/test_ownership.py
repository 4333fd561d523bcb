"""
Receipt ownership and override tests.

Verifies:
- Only the owner mutates a receipt
- A supervisor PIN issues a single-use grant for one receipt and one action
- Grants are checked for receipt, action, requester, use and expiry
- Every denial and every grant is audited with both user ids
"""

from datetime import timedelta

import pytest

from shiftledger.errors import AuthorizationDenied, NotFound, ValidationError
from shiftledger.extensions import db
from shiftledger.models import AuditEntry, OverrideGrant
from shiftledger.services import ownership_service, receipt_service, settlement_service
from shiftledger.time_utils import utcnow


SUPERVISOR_PIN = "4321"
MANAGER_PIN = "9876"


@pytest.fixture
def owned_receipt(staff, period, products):
    """Receipt owned by `cashier`."""
    return receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.fries}])


def _grant(receipt_id, requester, action="ADD_ITEMS", authorizer="supervisor", pin=SUPERVISOR_PIN):
    return ownership_service.request_override(receipt_id, requester, authorizer, pin, action)


class TestOwnerOnly:
    def test_non_owner_denied(self, staff, owned_receipt, products):
        with pytest.raises(AuthorizationDenied):
            receipt_service.add_items(owned_receipt.id, [{"product_id": products.fries}], staff.cashier2)

        assert len(receipt_service.get_receipt_items(owned_receipt.id)) == 1
        entry = db.session.query(AuditEntry).filter_by(action="ownership.denied").one()
        assert entry.actor_user_id == staff.cashier2
        assert entry.entity_id == owned_receipt.id

    def test_non_owner_cannot_settle(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            settlement_service.settle_receipt(
                owned_receipt.id,
                [{"method": "CASH", "amount_cents": 1000, "idempotency_key": "k"}],
                staff.cashier2,
            )
        assert receipt_service.get_receipt(owned_receipt.id).state == "PENDING"

    def test_non_owner_cannot_split(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            receipt_service.split_receipt(owned_receipt.id, {"mode": "equal", "parts": 2}, staff.cashier2)

    def test_owner_passes(self, staff, owned_receipt, products):
        items = receipt_service.add_items(owned_receipt.id, [{"product_id": products.fries}], staff.cashier)
        assert len(items) == 1


class TestOverrideGrant:
    def test_grant_allows_one_mutation(self, staff, owned_receipt, products):
        grant, token = _grant(owned_receipt.id, staff.cashier2)
        assert grant.authorized_by_user_id == staff.supervisor

        receipt_service.add_items(
            owned_receipt.id, [{"product_id": products.fries}], staff.cashier2, override_token=token,
        )

        entry = db.session.query(AuditEntry).filter_by(action="receipt.items_added").one()
        assert entry.actor_user_id == staff.cashier2
        assert entry.authorized_by_user_id == staff.supervisor
        assert db.session.get(OverrideGrant, grant.id).consumed_at is not None

    def test_grant_is_single_use(self, staff, owned_receipt, products):
        _, token = _grant(owned_receipt.id, staff.cashier2)
        receipt_service.add_items(owned_receipt.id, [{"product_id": products.fries}], staff.cashier2, override_token=token)

        with pytest.raises(AuthorizationDenied):
            receipt_service.add_items(
                owned_receipt.id, [{"product_id": products.fries}], staff.cashier2, override_token=token,
            )

    def test_grant_is_bound_to_action(self, staff, owned_receipt):
        _, token = _grant(owned_receipt.id, staff.cashier2, action="ADD_ITEMS")
        with pytest.raises(AuthorizationDenied):
            receipt_service.split_receipt(
                owned_receipt.id, {"mode": "equal", "parts": 2}, staff.cashier2, override_token=token,
            )

    def test_grant_is_bound_to_receipt(self, staff, owned_receipt, products):
        other = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.fries}])
        _, token = _grant(owned_receipt.id, staff.cashier2)
        with pytest.raises(AuthorizationDenied):
            receipt_service.add_items(other.id, [{"product_id": products.fries}], staff.cashier2, override_token=token)

    def test_grant_is_bound_to_requester(self, staff, owned_receipt, products):
        _, token = _grant(owned_receipt.id, staff.cashier2)
        with pytest.raises(AuthorizationDenied):
            receipt_service.add_items(owned_receipt.id, [{"product_id": products.fries}], staff.manager, override_token=token)

    def test_expired_grant(self, staff, owned_receipt, products):
        grant, token = _grant(owned_receipt.id, staff.cashier2)
        stored = db.session.get(OverrideGrant, grant.id)
        stored.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        with pytest.raises(AuthorizationDenied) as exc:
            receipt_service.add_items(owned_receipt.id, [{"product_id": products.fries}], staff.cashier2, override_token=token)
        assert "expired" in exc.value.message

    def test_grant_not_consumed_by_failed_mutation(self, staff, owned_receipt, products):
        grant, token = _grant(owned_receipt.id, staff.cashier2)
        with pytest.raises(NotFound):
            receipt_service.add_items(
                owned_receipt.id, [{"product_id": 9999}], staff.cashier2, override_token=token,
            )
        assert db.session.get(OverrideGrant, grant.id).consumed_at is None

        items = receipt_service.add_items(
            owned_receipt.id, [{"product_id": products.fries}], staff.cashier2, override_token=token,
        )
        assert len(items) == 1

    def test_merge_with_grant_for_foreign_receipt(self, staff, owned_receipt, products):
        mine = receipt_service.open_receipt(staff.cashier2, items=[{"product_id": products.fries}])
        _, token = _grant(owned_receipt.id, staff.cashier2, action="MERGE")

        merged = receipt_service.merge_receipts(
            [mine.id, owned_receipt.id], staff.cashier2, override_tokens={str(owned_receipt.id): token},
        )

        assert merged.owner_user_id == staff.cashier2
        archived = db.session.query(AuditEntry).filter_by(action="receipt.archived", entity_id=owned_receipt.id).one()
        assert archived.authorized_by_user_id == staff.supervisor


class TestRequestOverride:
    def test_wrong_pin_denied_and_audited(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            _grant(owned_receipt.id, staff.cashier2, pin="0000")
        entry = db.session.query(AuditEntry).filter_by(action="override.denied").one()
        assert entry.actor_user_id == staff.cashier2
        assert entry.authorized_by_user_id == staff.supervisor
        assert db.session.query(OverrideGrant).count() == 0

    def test_authorizer_needs_override_permission(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            _grant(owned_receipt.id, staff.cashier2, authorizer="cashier", pin="1111")

    def test_cannot_authorize_yourself(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            _grant(owned_receipt.id, staff.supervisor, authorizer="supervisor")

    def test_unknown_authorizer(self, staff, owned_receipt):
        with pytest.raises(AuthorizationDenied):
            _grant(owned_receipt.id, staff.cashier2, authorizer="nobody")

    def test_unknown_action(self, staff, owned_receipt):
        with pytest.raises(ValidationError):
            _grant(owned_receipt.id, staff.cashier2, action="DELETE")

    def test_manager_can_authorize(self, staff, owned_receipt):
        grant, token = _grant(owned_receipt.id, staff.cashier2, authorizer="manager", pin=MANAGER_PIN)
        assert grant.authorized_by_user_id == staff.manager
        assert token
        # Only the hash is stored
        assert grant.token_hash != token

    def test_grant_is_audited(self, staff, owned_receipt):
        grant, _ = _grant(owned_receipt.id, staff.cashier2)
        entry = db.session.query(AuditEntry).filter_by(action="override.granted").one()
        assert entry.actor_user_id == staff.cashier2
        assert entry.authorized_by_user_id == staff.supervisor
        assert entry.after["grant_id"] == grant.id
