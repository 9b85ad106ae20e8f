import pytest

from conftest import BASE_FEE, make_listing, make_user
from keyrent.errors import Conflict, Forbidden, NotFound, ValidationError
from keyrent.models import Notification


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role="admin")


class TestSubmit:
    def test_submit_nin(self, svc, renter):
        v = svc.verification.submit(renter.id, "NIN", "123 4567 8901")

        assert v.method == "nin"
        assert v.id_number == "12345678901"
        assert v.status == "pending"

    @pytest.mark.parametrize(
        "method,number",
        [("passport", "12345678901"), ("bvn", "1234"), ("bvn", "12345abc901"), ("", "12345678901")],
    )
    def test_rejects_invalid_input(self, svc, renter, method, number):
        with pytest.raises(ValidationError):
            svc.verification.submit(renter.id, method, number)

    def test_already_verified(self, db, svc):
        user = make_user(db, "done@example.com", is_verified=True)

        with pytest.raises(Conflict):
            svc.verification.submit(user.id, "bvn", "12345678901")

    def test_second_submission_while_pending_conflicts(self, db, svc, renter):
        first = svc.verification.submit(renter.id, "nin", "12345678901")

        with pytest.raises(Conflict):
            svc.verification.submit(renter.id, "bvn", "10987654321")

        assert [v.id for v in svc.verification.list_for_user(renter.id)] == [first.id]

    def test_resubmit_after_rejection(self, svc, renter, admin):
        first = svc.verification.submit(renter.id, "nin", "12345678901")
        svc.verification.review(admin.id, first.id, approve=False)

        second = svc.verification.submit(renter.id, "bvn", "10987654321")

        assert second.status == "pending"
        assert [v.id for v in svc.verification.list_for_user(renter.id)] == [second.id, first.id]


class TestReview:
    def test_approval_lowers_contact_fee(self, db, svc, renter, admin):
        assert svc.gate.fee_for_user(renter.id) == BASE_FEE
        v = svc.verification.submit(renter.id, "bvn", "12345678901")

        reviewed = svc.verification.review(admin.id, v.id, approve=True)

        assert reviewed.status == "verified"
        assert renter.is_verified is True
        assert svc.gate.fee_for_user(renter.id) == 3750

        make_listing(db, renter, approved=False, title="Room and parlour, Ikorodu")
        assert svc.gate.fee_for_user(renter.id) == 2500

    def test_rejection_keeps_full_fee(self, db, svc, renter, admin):
        v = svc.verification.submit(renter.id, "nin", "12345678901")

        reviewed = svc.verification.review(admin.id, v.id, approve=False)

        assert reviewed.status == "rejected"
        assert svc.gate.fee_for_user(renter.id) == BASE_FEE
        note = db.query(Notification).filter_by(user_id=renter.id, kind="verification").one()
        assert "not approved" in note.body

    def test_review_is_final(self, svc, renter, admin):
        v = svc.verification.submit(renter.id, "nin", "12345678901")
        svc.verification.review(admin.id, v.id, approve=False)

        again = svc.verification.review(admin.id, v.id, approve=True)

        assert again.status == "rejected"
        assert renter.is_verified is False

    def test_non_admin_cannot_review(self, svc, renter, owner):
        v = svc.verification.submit(renter.id, "nin", "12345678901")

        with pytest.raises(Forbidden):
            svc.verification.review(owner.id, v.id, approve=True)

    def test_unknown_verification(self, svc, admin):
        with pytest.raises(NotFound):
            svc.verification.review(admin.id, 999, approve=True)
