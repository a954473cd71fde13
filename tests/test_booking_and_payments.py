import json

import pytest

from infra.payment_client import sign_payload, verify_signature


def webhook_body(event_type: str, session_id: str) -> bytes:
    return json.dumps({"type": event_type, "data": {"object": {"id": session_id}}}).encode()


async def post_webhook(client, body: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    headers["X-Payment-Signature"] = signature if signature is not None else sign_payload(body, "whsec_test")
    return await client.post("/api/payments/webhook", content=body, headers=headers)


def test_signature_verification():
    body = b'{"type": "checkout.session.completed"}'
    sig = sign_payload(body, "secret")
    assert verify_signature(body, sig, "secret")
    assert verify_signature(body, f"sha256={sig}", "secret")
    assert not verify_signature(body + b" ", sig, "secret")
    assert not verify_signature(body, None, "secret")
    assert not verify_signature(body, sig, "")


@pytest.mark.asyncio
async def test_seat_claim_and_release(client, make_fleet, make_user):
    fleet = await make_fleet(total_seats=1)
    _, alice = await make_user("client")
    _, bob = await make_user("client")

    booked = await client.post("/api/client/booking", headers=alice, json={"busId": fleet["bus_id"]})
    assert booked.status_code == 201
    booking = booked.json()["data"]
    assert booking["status"] == "pending"

    full = await client.post("/api/client/booking", headers=bob, json={"busId": fleet["bus_id"]})
    assert full.status_code == 409

    # only the owner may cancel
    assert (await client.put(f"/api/client/booking/{booking['id']}/cancel", headers=bob)).status_code == 404
    cancelled = await client.put(f"/api/client/booking/{booking['id']}/cancel", headers=alice)
    assert cancelled.json()["data"]["status"] == "cancelled"
    again = await client.put(f"/api/client/booking/{booking['id']}/cancel", headers=alice)
    assert again.status_code == 409

    retry = await client.post("/api/client/booking", headers=bob, json={"busId": fleet["bus_id"]})
    assert retry.status_code == 201

    bus = (await client.get("/api/client/buses")).json()["data"][0]
    assert bus["available_seats"] == 0

    assert (await client.post("/api/client/booking", headers=bob, json={"busId": "missing"})).status_code == 404
    # staff cannot book as passengers
    assert (await client.post("/api/client/booking", headers=fleet["driver_headers"],
                              json={"busId": fleet["bus_id"]})).status_code == 403


@pytest.mark.asyncio
async def test_checkout_and_completed_webhook_confirm_booking(client, make_fleet, make_user):
    fleet = await make_fleet(fare_cents=2500)
    rider_id, rider = await make_user("client")
    booking = (await client.post("/api/client/booking", headers=rider, json={"busId": fleet["bus_id"]})).json()["data"]

    checkout = await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})
    assert checkout.status_code == 201
    payment = checkout.json()["data"]
    assert payment["amount_cents"] == 2500
    assert payment["currency"] == "PHP"
    assert payment["status"] == "pending"
    assert payment["discount_applied"] is False
    assert payment["session_id"].startswith("offline_")

    reused = (await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})).json()["data"]
    assert reused["session_id"] == payment["session_id"]

    body = webhook_body("checkout.session.completed", payment["session_id"])
    forged = await post_webhook(client, body, signature="0" * 64)
    assert forged.status_code == 400

    done = await post_webhook(client, body)
    assert done.status_code == 200
    assert done.json()["data"] == {"received": True, "handled": True}

    replay = await post_webhook(client, body)
    assert replay.json()["data"] == {"received": True, "handled": False}

    bookings = (await client.get("/api/client/bookings", headers=rider)).json()["data"]
    assert bookings[0]["status"] == "confirmed"

    notes = (await client.get("/api/notifications", headers=rider)).json()["data"]
    assert len(notes) == 1
    assert notes[0]["type"] == "general"
    assert notes[0]["title"] == "Booking confirmed"
    assert notes[0]["recipient_id"] == rider_id

    # confirmed bookings no longer take checkouts
    late = await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})
    assert late.status_code == 409


@pytest.mark.asyncio
async def test_expired_webhook_and_checkout_guards(client, make_fleet, make_user):
    fleet = await make_fleet()
    _, rider = await make_user("client")
    _, stranger = await make_user("client")
    booking = (await client.post("/api/client/booking", headers=rider, json={"busId": fleet["bus_id"]})).json()["data"]

    assert (await client.post("/api/payments/checkout", headers=stranger,
                              json={"bookingId": booking["id"]})).status_code == 404

    payment = (await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})).json()["data"]
    expired = await post_webhook(client, webhook_body("checkout.session.expired", payment["session_id"]))
    assert expired.json()["data"]["handled"] is True

    # a fresh session can be opened after expiry
    fresh = (await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})).json()["data"]
    assert fresh["session_id"] != payment["session_id"]

    unknown = await post_webhook(client, webhook_body("checkout.session.completed", "cs_unknown"))
    assert unknown.json()["data"]["handled"] is False

    malformed = await post_webhook(client, b"not json")
    assert malformed.status_code == 400


@pytest.mark.asyncio
async def test_discount_application_flow(client, make_fleet, make_user):
    fleet = await make_fleet(fare_cents=2500)
    rider_id, rider = await make_user("client")

    applied = await client.post("/api/client/discount", headers=rider, json={
        "discountType": "student", "documentUrl": "https://files.transit.io/ids/student.png",
    })
    assert applied.status_code == 201
    application = applied.json()["data"]
    assert application["status"] == "pending"

    dup = await client.post("/api/client/discount", headers=rider, json={
        "discountType": "senior", "documentUrl": "https://files.transit.io/ids/senior.png",
    })
    assert dup.status_code == 409

    pending = (await client.get("/api/admin/discount-applications", headers=fleet["admin_headers"],
                                params={"status": "pending"})).json()["data"]
    assert [a["id"] for a in pending] == [application["id"]]

    decided = await client.put(f"/api/admin/discount-applications/{application['id']}",
                               headers=fleet["admin_headers"], json={"approve": True, "note": "ID verified"})
    assert decided.json()["data"]["status"] == "approved"
    assert decided.json()["data"]["reviewer_id"] == fleet["admin_id"]

    again = await client.put(f"/api/admin/discount-applications/{application['id']}",
                             headers=fleet["admin_headers"], json={"approve": False})
    assert again.status_code == 409

    notes = (await client.get("/api/notifications", headers=rider)).json()["data"]
    assert notes[0]["type"] == "general"
    assert "approved" in notes[0]["message"]

    me = (await client.get("/api/auth/me", headers=rider)).json()["data"]
    assert me["profile"]["discount"]["type"] == "student"

    booking = (await client.post("/api/client/booking", headers=rider, json={"busId": fleet["bus_id"]})).json()["data"]
    payment = (await client.post("/api/payments/checkout", headers=rider, json={"bookingId": booking["id"]})).json()["data"]
    assert payment["amount_cents"] == 2000
    assert payment["discount_applied"] is True


@pytest.mark.asyncio
async def test_feedback(client, make_fleet, make_user):
    fleet = await make_fleet()
    _, rider = await make_user("client")

    bad = await client.post("/api/client/feedback", headers=rider, json={"busId": fleet["bus_id"], "rating": 6})
    assert bad.status_code == 422

    good = await client.post("/api/client/feedback", headers=rider,
                             json={"busId": fleet["bus_id"], "rating": 5, "comment": "Clean and on time"})
    assert good.status_code == 201
    assert good.json()["data"]["rating"] == 5

    missing = await client.post("/api/client/feedback", headers=rider, json={"busId": "missing", "rating": 3})
    assert missing.status_code == 404
