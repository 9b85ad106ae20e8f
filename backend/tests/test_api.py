"""
HTTP surface: routes, status codes and the gateway round trip.
"""

import asyncio
import hashlib
import hmac
import json
from unittest.mock import patch

import pytest

from conftest import BASE_FEE, LISTING_FEE, auth_headers, make_listing, make_user
from keyrent.models import Payment, User
from keyrent.paystack import PaystackError


@pytest.fixture
def people(seed):
    def _create(db):
        owner = make_user(db, "owner@example.com", role="owner", phone="+2348012345678")
        renter = make_user(db, "renter@example.com")
        admin = make_user(db, "admin@example.com", role="admin")
        listing = make_listing(db, owner)
        return {"owner": owner.id, "renter": renter.id, "admin": admin.id, "listing": listing.id}

    return seed(_create)


def _initiate(client, user_id, listing_id, kind="contact_fee"):
    r = client.post(
        "/payments/initiate", json={"kind": kind, "listingId": listing_id}, headers=auth_headers(user_id)
    )
    assert r.status_code == 201, r.text
    return r.json()


def _verify(client, user_id, init, **extra):
    return client.post(
        f"/payments/verify/{init['paymentId']}",
        json={"reference": init["reference"], **extra},
        headers=auth_headers(user_id),
    )


class TestAuth:
    def test_register_and_login(self, client):
        r = client.post("/auth/register", json={"email": "New@Example.com", "password": "secret123", "role": "owner"})
        assert r.status_code == 201

        r = client.post("/auth/login", json={"email": "new@example.com", "password": "secret123"})
        assert r.status_code == 200
        body = r.json()
        assert body["user"]["role"] == "owner"

        me = client.get("/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.status_code == 200
        assert me.json()["contactFee"] == BASE_FEE

    def test_duplicate_registration(self, client):
        payload = {"email": "dup@example.com", "password": "secret123"}
        assert client.post("/auth/register", json=payload).status_code == 201
        assert client.post("/auth/register", json=payload).status_code == 409

    def test_account_without_usable_hash_cannot_log_in(self, client, people):
        # Seeded accounts carry a placeholder, not a bcrypt hash.
        r = client.post("/auth/login", json={"email": "renter@example.com", "password": "anything"})

        assert r.status_code == 401

    def test_bad_password(self, client):
        client.post("/auth/register", json={"email": "a@example.com", "password": "secret123"})

        r = client.post("/auth/login", json={"email": "a@example.com", "password": "wrong-one"})

        assert r.status_code == 401

    def test_unauthenticated(self, client, people):
        assert client.get(f"/contact-access/{people['listing']}").status_code == 401
        assert client.get("/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


class TestListings:
    def test_contact_details_hidden_until_access(self, client, people):
        anon = client.get(f"/listings/{people['listing']}").json()
        assert "contactPhone" not in anon

        renter = client.get(f"/listings/{people['listing']}", headers=auth_headers(people["renter"])).json()
        assert renter["hasContactAccess"] is False
        assert "contactPhone" not in renter

        owner = client.get(f"/listings/{people['listing']}", headers=auth_headers(people["owner"])).json()
        assert owner["hasContactAccess"] is True
        assert owner["contactPhone"] == "+2348012345678"

    def test_browse_marks_access(self, client, people):
        client.post(
            "/admin/contact-access",
            json={"userId": people["renter"], "listingId": people["listing"]},
            headers=auth_headers(people["admin"], role="admin"),
        )

        items = client.get("/listings", headers=auth_headers(people["renter"])).json()["items"]

        assert [x["hasContactAccess"] for x in items] == [True]
        assert items[0]["contactPhone"] == "+2348012345678"

    def test_owner_updates_listing(self, client, people):
        r = client.put(
            f"/listings/{people['listing']}",
            json={"title": " 3 bedroom flat, Yaba ", "price": 1_800_000, "type": "Apartment"},
            headers=auth_headers(people["owner"]),
        )

        assert r.status_code == 200
        body = r.json()
        assert body["title"] == "3 bedroom flat, Yaba"
        assert body["price"] == 1_800_000
        assert body["type"] == "apartment"
        assert body["approved"] is True

    def test_only_owner_or_admin_may_update(self, client, people):
        stranger = client.put(
            f"/listings/{people['listing']}", json={"price": 1}, headers=auth_headers(people["renter"])
        )
        admin = client.put(
            f"/listings/{people['listing']}",
            json={"description": "Checked by staff"},
            headers=auth_headers(people["admin"], role="admin"),
        )

        assert stranger.status_code == 403
        assert admin.status_code == 200
        assert client.get(f"/listings/{people['listing']}").json()["price"] == 1_500_000

    def test_delete_hides_listing(self, client, people):
        assert client.delete(f"/listings/{people['listing']}", headers=auth_headers(people["renter"])).status_code == 403

        r = client.delete(f"/listings/{people['listing']}", headers=auth_headers(people["owner"]))

        assert r.json() == {"ok": True}
        assert client.get(f"/listings/{people['listing']}").status_code == 404
        assert client.get("/listings").json()["items"] == []
        assert client.delete(f"/listings/{people['listing']}", headers=auth_headers(people["owner"])).status_code == 404

    def test_filters(self, client, seed, people):
        def _more(db):
            owner = db.get(User, people["owner"])
            make_listing(db, owner, title="Shortlet, Lekki", price=80_000, property_type="apartment", category="shortlet")
            make_listing(db, owner, title="Duplex, Ikoyi", price=9_000_000, property_type="duplex", category="rent")

        seed(_more)

        def titles(query):
            return [x["title"] for x in client.get(f"/listings?{query}").json()["items"]]

        assert titles("type=duplex") == ["Duplex, Ikoyi"]
        assert titles("category=shortlet") == ["Shortlet, Lekki"]
        assert titles("minPrice=100000&maxPrice=2000000") == ["2 bedroom flat, Yaba"]

    def test_featured_and_recent_feeds(self, client, seed, people):
        def _more(db):
            owner = db.get(User, people["owner"])
            make_listing(db, owner, title="Penthouse, VI", featured=True)
            make_listing(db, owner, title="Draft, Ajah", approved=False)

        seed(_more)

        featured = client.get("/listings/featured").json()["items"]
        recent = client.get("/listings/recent?limit=5").json()["items"]

        assert [x["title"] for x in featured] == ["Penthouse, VI"]
        assert [x["title"] for x in recent] == ["Penthouse, VI", "2 bedroom flat, Yaba"]

    def test_nearby(self, client, seed, people):
        def _more(db):
            owner = db.get(User, people["owner"])
            make_listing(db, owner, title="Flat, Surulere", latitude=6.4969, longitude=3.3534)
            make_listing(db, owner, title="Flat, Yaba", latitude=6.5095, longitude=3.3711)
            make_listing(db, owner, title="Flat, Lekki", latitude=6.4698, longitude=3.5852)

        seed(_more)

        items = client.get("/listings/nearby?lat=6.5100&lng=3.3700&radiusKm=5").json()["items"]

        assert [x["title"] for x in items] == ["Flat, Yaba", "Flat, Surulere"]
        assert items[0]["distanceKm"] < items[1]["distanceKm"] <= 5

    def test_nearby_requires_coordinates(self, client, people):
        assert client.get("/listings/nearby?lat=6.5").status_code == 400



class TestContactAccess:
    def test_check_without_grant(self, client, people):
        r = client.get(f"/contact-access/{people['listing']}", headers=auth_headers(people["renter"]))

        assert r.status_code == 200
        assert r.json() == {"hasAccess": False, "grant": None}

    def test_request_returns_fee(self, client, people):
        r = client.post(
            "/contact-access", json={"listingId": people["listing"]}, headers=auth_headers(people["renter"])
        )

        assert r.status_code == 200
        assert r.json()["fee"] == BASE_FEE
        assert r.json()["grant"]["granted"] is False

    def test_unknown_listing(self, client, people):
        assert client.get("/contact-access/999", headers=auth_headers(people["renter"])).status_code == 404

    def test_admin_grant_requires_admin(self, client, people):
        r = client.post(
            "/admin/contact-access",
            json={"userId": people["renter"], "listingId": people["listing"]},
            headers=auth_headers(people["owner"]),
        )

        assert r.status_code == 403


class TestPaymentVerification:
    def test_unlock_flow(self, client, gateway, people):
        renter = people["renter"]
        init = _initiate(client, renter, people["listing"])
        assert init["amount"] == BASE_FEE
        assert init["currency"] == "NGN"

        gateway.verify_transaction.return_value = {"status": "success", "amount": BASE_FEE}
        r = _verify(client, renter, init)

        assert r.status_code == 200
        assert r.json()["status"] == "verified"
        assert r.json()["payment"]["status"] == "successful"
        access = client.get(f"/contact-access/{people['listing']}", headers=auth_headers(renter)).json()
        assert access["hasAccess"] is True
        assert access["grant"]["paymentId"] == init["paymentId"]

        notes = client.get("/notifications", headers=auth_headers(renter)).json()["items"]
        assert [n["title"] for n in notes] == ["Payment successful"]

    def test_repeat_verify_skips_gateway(self, client, gateway, people):
        init = _initiate(client, people["renter"], people["listing"])
        gateway.verify_transaction.return_value = {"status": "success", "amount": BASE_FEE}
        _verify(client, people["renter"], init)

        r = _verify(client, people["renter"], init)

        assert r.json()["status"] == "already_processed"
        assert gateway.verify_transaction.call_count == 1

    def test_declined(self, client, gateway, people):
        init = _initiate(client, people["renter"], people["listing"])
        gateway.verify_transaction.return_value = {"status": "failed", "gateway_response": "Declined"}

        r = _verify(client, people["renter"], init)

        assert r.json()["status"] == "rejected"
        assert r.json()["payment"]["status"] == "failed"

    def test_amount_mismatch_is_rejected(self, client, gateway, people):
        init = _initiate(client, people["renter"], people["listing"])
        gateway.verify_transaction.return_value = {"status": "success", "amount": 100}

        assert _verify(client, people["renter"], init).json()["status"] == "rejected"

    def test_gateway_error_keeps_payment_pending(self, client, gateway, seed, people):
        init = _initiate(client, people["renter"], people["listing"])
        gateway.verify_transaction.side_effect = PaystackError("timeout")

        r = _verify(client, people["renter"], init)

        assert r.status_code == 502
        assert seed(lambda db: db.get(Payment, init["paymentId"]).status) == "pending"

        gateway.verify_transaction.side_effect = None
        gateway.verify_transaction.return_value = {"status": "success", "amount": BASE_FEE}
        assert _verify(client, people["renter"], init).json()["status"] == "verified"

    def test_cancelled_checkout(self, client, gateway, people):
        init = _initiate(client, people["renter"], people["listing"])

        r = _verify(client, people["renter"], init, cancelled=True)

        assert r.json()["status"] == "cancelled"
        assert r.json()["payment"]["status"] == "pending"
        gateway.verify_transaction.assert_not_called()

    def test_reference_must_match(self, client, people):
        init = _initiate(client, people["renter"], people["listing"])

        r = _verify(client, people["renter"], {**init, "reference": "KR-0-other"})

        assert r.status_code == 409

    def test_cannot_verify_someone_elses_payment(self, client, people):
        init = _initiate(client, people["renter"], people["listing"])

        assert _verify(client, people["admin"], init).status_code == 403

    def test_owner_contact_fee_is_rejected(self, client, people):
        r = client.post(
            "/payments/initiate",
            json={"kind": "contact_fee", "listingId": people["listing"]},
            headers=auth_headers(people["owner"]),
        )

        assert r.status_code == 400

    def test_listing_fee_approves_listing(self, client, gateway, people):
        r = client.post(
            "/listings",
            json={"title": "Studio, Ajah", "price": 900000, "location": "Ajah"},
            headers=auth_headers(people["owner"]),
        )
        listing_id = r.json()["id"]
        assert client.get(f"/listings/{listing_id}").status_code == 404

        init = _initiate(client, people["owner"], listing_id, kind="listing_fee")
        assert init["amount"] == LISTING_FEE
        gateway.verify_transaction.return_value = {"status": "success", "amount": LISTING_FEE}
        assert _verify(client, people["owner"], init).json()["status"] == "verified"

        assert client.get(f"/listings/{listing_id}").json()["approved"] is True

    def test_list_payments(self, client, people):
        init = _initiate(client, people["renter"], people["listing"])

        items = client.get("/payments", headers=auth_headers(people["renter"])).json()["items"]

        assert [p["reference"] for p in items] == [init["reference"]]


class TestWebhook:
    def _post(self, client, payload, secret="whsec"):
        body = json.dumps(payload).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
        return client.post(
            "/payments/webhook",
            content=body,
            headers={"X-Paystack-Signature": signature, "Content-Type": "application/json"},
        )

    def test_charge_success_grants_access(self, client, people, monkeypatch):
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec")
        init = _initiate(client, people["renter"], people["listing"])
        payload = {"event": "charge.success", "data": {"reference": init["reference"], "status": "success",
                                                       "amount": BASE_FEE}}

        first = self._post(client, payload)
        second = self._post(client, payload)

        assert first.json() == {"ok": True, "status": "verified"}
        assert second.json() == {"ok": True, "status": "already_processed"}
        access = client.get(f"/contact-access/{people['listing']}", headers=auth_headers(people["renter"])).json()
        assert access["hasAccess"] is True

    def test_charge_failed(self, client, people, monkeypatch):
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec")
        init = _initiate(client, people["renter"], people["listing"])

        r = self._post(client, {"event": "charge.failed", "data": {"reference": init["reference"]}})

        assert r.json()["status"] == "rejected"

    def test_invalid_signature(self, client, people, monkeypatch):
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec")
        init = _initiate(client, people["renter"], people["listing"])

        r = self._post(client, {"event": "charge.success", "data": {"reference": init["reference"]}}, secret="bad")

        assert r.status_code == 400
        access = client.get(f"/contact-access/{people['listing']}", headers=auth_headers(people["renter"])).json()
        assert access["hasAccess"] is False

    def test_unknown_reference_is_acknowledged(self, client, monkeypatch):
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec")

        r = self._post(client, {"event": "charge.success", "data": {"reference": "KR-0-unknown"}})

        assert r.status_code == 200
        assert r.json() == {"ok": True}

    def test_notification_email_is_sent_off_the_event_loop(self, client, people, monkeypatch):
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec")
        init = _initiate(client, people["renter"], people["listing"])
        where = []

        def record(**kwargs):
            try:
                asyncio.get_running_loop()
                where.append("event loop")
            except RuntimeError:
                where.append("worker thread")

        with patch("keyrent.notifications.send_email", side_effect=record):
            r = self._post(client, {"event": "charge.success", "data": {"reference": init["reference"],
                                                                        "status": "success", "amount": BASE_FEE}})

        assert r.json()["status"] == "verified"
        assert where == ["worker thread"]



class TestMessagingRoutes:
    def test_messages_gated_until_payment(self, client, gateway, people):
        renter, owner = people["renter"], people["owner"]
        r = client.post("/conversations", json={"listingId": people["listing"]}, headers=auth_headers(renter))
        assert r.status_code == 201
        conv_id = r.json()["id"]

        again = client.post("/conversations", json={"listingId": people["listing"]}, headers=auth_headers(renter))
        assert again.status_code == 200
        assert again.json()["id"] == conv_id

        r = client.post(f"/conversations/{conv_id}/messages", json={"text": "Hi"}, headers=auth_headers(renter))
        assert r.status_code == 403
        assert r.json()["detail"] == "Contact access required to send messages"

        init = _initiate(client, renter, people["listing"])
        gateway.verify_transaction.return_value = {"status": "success", "amount": BASE_FEE}
        _verify(client, renter, init)

        r = client.post(f"/conversations/{conv_id}/messages", json={"text": "Hi"}, headers=auth_headers(renter))
        assert r.status_code == 201

        msgs = client.get(f"/conversations/{conv_id}/messages", headers=auth_headers(owner)).json()["items"]
        assert [m["text"] for m in msgs] == ["Hi"]

        unread = client.get("/notifications?unread=true", headers=auth_headers(owner)).json()["items"]
        assert [n["kind"] for n in unread] == ["message"]
        assert client.put("/notifications/read-all", headers=auth_headers(owner)).json()["updated"] == 1

    def test_stranger_cannot_read(self, client, people):
        r = client.post("/conversations", json={"listingId": people["listing"]}, headers=auth_headers(people["renter"]))

        resp = client.get(f"/conversations/{r.json()['id']}/messages", headers=auth_headers(people["admin"]))

        assert resp.status_code == 403


class TestVerificationRoutes:
    def test_approved_verification_lowers_fee(self, client, people):
        r = client.post(
            "/verifications",
            json={"method": "nin", "idNumber": "12345678901"},
            headers=auth_headers(people["renter"]),
        )
        assert r.status_code == 201

        review = client.post(
            f"/admin/verifications/{r.json()['id']}/review",
            json={"approve": True},
            headers=auth_headers(people["admin"], role="admin"),
        )
        assert review.json()["status"] == "verified"

        assert client.get("/me", headers=auth_headers(people["renter"])).json()["contactFee"] == 3750

    def test_list_own_verifications(self, client, people):
        headers = auth_headers(people["renter"])
        first = client.post("/verifications", json={"method": "nin", "idNumber": "12345678901"}, headers=headers)
        duplicate = client.post("/verifications", json={"method": "bvn", "idNumber": "10987654321"}, headers=headers)

        assert duplicate.status_code == 409
        items = client.get("/verifications", headers=headers).json()["items"]
        assert [(v["id"], v["method"], v["status"]) for v in items] == [(first.json()["id"], "nin", "pending")]
        assert client.get("/verifications", headers=auth_headers(people["owner"])).json()["items"] == []
