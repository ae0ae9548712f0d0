"""
HTTP API Tests.

Parcel endpoints, role permissions, error envelopes, dispatch and
geocoding routes.
"""

import httpx
import pytest

ADMIN_ID = 900
SENDER_ID = 1
RECIPIENT_ID = 2
OTHER_CUSTOMER_ID = 3
DRIVER_ID = 101
SECOND_DRIVER_ID = 102
UNAVAILABLE_DRIVER_ID = 103

PARCEL_PAYLOAD = {
    "sender_name": "Jane Wanjiku",
    "sender_email": "jane@example.com",
    "sender_phone": "+254700000001",
    "recipient_id": RECIPIENT_ID,
    "recipient_name": "Otieno Ouma",
    "recipient_email": "otieno@example.com",
    "recipient_phone": "+254700000002",
    "pickup_address": "Kenyatta Avenue, Nairobi",
    "delivery_address": "Moi Avenue, Mombasa",
    "weight_kg": 2.5,
    "description": "Documents",
}


@pytest.fixture
def admin(auth_headers):
    return auth_headers(ADMIN_ID, "ADMIN")


@pytest.fixture
def sender(auth_headers):
    return auth_headers(SENDER_ID, "CUSTOMER")


@pytest.fixture
def recipient(auth_headers):
    return auth_headers(RECIPIENT_ID, "CUSTOMER")


@pytest.fixture
def driver(auth_headers):
    return auth_headers(DRIVER_ID, "DRIVER")


@pytest.fixture
async def parcel(client, sender):
    response = await client.post("/v1/parcels", json=PARCEL_PAYLOAD, headers=sender)
    assert response.status_code == 201
    return response.json()


async def transition(client, parcel_id, headers, action, **payload):
    return await client.post(
        f"/v1/parcels/{parcel_id}/transitions",
        json={"action": action, **payload},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] == "up"
    assert "X-Correlation-ID" in response.headers


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


# Creation and queries

@pytest.mark.asyncio
async def test_customer_creates_parcel_as_sender(client, auth_headers):
    payload = {**PARCEL_PAYLOAD, "sender_id": 777}
    response = await client.post("/v1/parcels", json=payload, headers=auth_headers(SENDER_ID, "CUSTOMER"))

    assert response.status_code == 201
    data = response.json()
    assert data["sender_id"] == SENDER_ID
    assert data["status"] == "pending"
    assert data["tracking_number"].startswith("CRR")
    assert data["payment_status"] == "pending"


@pytest.mark.asyncio
async def test_admin_creates_parcel_on_behalf(client, admin):
    response = await client.post("/v1/parcels", json={**PARCEL_PAYLOAD, "sender_id": 55}, headers=admin)
    assert response.status_code == 201
    assert response.json()["sender_id"] == 55


@pytest.mark.asyncio
async def test_driver_cannot_create_parcel(client, driver):
    response = await client.post("/v1/parcels", json=PARCEL_PAYLOAD, headers=driver)
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_FORBIDDEN"


@pytest.mark.asyncio
async def test_create_requires_token(client):
    response = await client.post("/v1/parcels", json=PARCEL_PAYLOAD)
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
async def test_invalid_token_rejected(client):
    response = await client.get("/v1/parcels", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_create_validation_error_envelope(client, sender):
    payload = {**PARCEL_PAYLOAD, "weight_kg": 0}
    response = await client.post("/v1/parcels", json=payload, headers=sender)

    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "ERR_VALIDATION"
    assert body["details"]["errors"]


@pytest.mark.asyncio
async def test_blank_address_rejected(client, sender):
    payload = {**PARCEL_PAYLOAD, "pickup_address": "     "}
    response = await client.post("/v1/parcels", json=payload, headers=sender)

    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_GEO_001"


@pytest.mark.asyncio
async def test_parcel_visibility(client, parcel, sender, recipient, admin, auth_headers):
    url = f"/v1/parcels/{parcel['id']}"

    assert (await client.get(url, headers=sender)).status_code == 200
    assert (await client.get(url, headers=recipient)).status_code == 200
    assert (await client.get(url, headers=admin)).status_code == 200

    stranger = auth_headers(OTHER_CUSTOMER_ID, "CUSTOMER")
    assert (await client.get(url, headers=stranger)).status_code == 403

    unassigned_driver = auth_headers(DRIVER_ID, "DRIVER")
    assert (await client.get(url, headers=unassigned_driver)).status_code == 403


@pytest.mark.asyncio
async def test_missing_parcel_not_found(client, admin):
    response = await client.get("/v1/parcels/9999", headers=admin)
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


@pytest.mark.asyncio
async def test_list_parcels_scoped_by_role(client, parcel, sender, admin, auth_headers):
    await client.post("/v1/parcels", json=PARCEL_PAYLOAD, headers=auth_headers(OTHER_CUSTOMER_ID, "CUSTOMER"))

    own = (await client.get("/v1/parcels", headers=sender)).json()
    assert own["total"] == 1
    assert own["parcels"][0]["id"] == parcel["id"]

    everything = (await client.get("/v1/parcels", headers=admin)).json()
    assert everything["total"] == 2

    pending = (await client.get("/v1/parcels", params={"status": "assigned"}, headers=admin)).json()
    assert pending["total"] == 0


@pytest.mark.asyncio
async def test_public_tracking(client, parcel):
    tracking_number = parcel["tracking_number"]
    response = await client.get(f"/v1/parcels/track/{tracking_number.lower()}")

    assert response.status_code == 200
    data = response.json()
    assert data["tracking_number"] == tracking_number
    assert data["status"] == "pending"
    assert len(data["history"]) == 1
    assert "sender_email" not in data


@pytest.mark.asyncio
async def test_tracking_unknown_number(client):
    response = await client.get("/v1/parcels/track/CRR00000000XXXXXX")
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND"


# Transitions

@pytest.mark.asyncio
async def test_full_journey_over_http(client, parcel, drivers, admin, driver, sender, recipient):
    pid = parcel["id"]

    response = await transition(client, pid, admin, "assign", driver_id=DRIVER_ID)
    assert response.status_code == 200
    assert response.json()["parcel"]["status"] == "assigned"
    assert response.json()["history_entry"]["actor_id"] == ADMIN_ID

    for action, expected in (("pickup", "picked_up"), ("depart", "in_transit"), ("arrive", "delivered_to_recipient")):
        response = await transition(client, pid, driver, action, location="Mombasa Road")
        assert response.status_code == 200, response.text
        assert response.json()["parcel"]["status"] == expected

    response = await transition(client, pid, recipient, "confirm_delivery", signature="O. Ouma")
    assert response.status_code == 200
    assert response.json()["parcel"]["delivered_to_recipient"] is True

    response = await transition(client, pid, recipient, "complete")
    assert response.status_code == 200
    assert response.json()["parcel"]["status"] == "completed"

    history = await client.get(f"/v1/parcels/{pid}/history", headers=sender)
    assert [h["status"] for h in history.json()] == [
        "pending", "assigned", "picked_up", "in_transit", "delivered_to_recipient", "delivered", "completed",
    ]

    response = await transition(client, pid, admin, "cancel")
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_PARCEL_001"


@pytest.mark.asyncio
async def test_unavailable_driver_error(client, parcel, drivers, admin):
    response = await transition(client, parcel["id"], admin, "assign", driver_id=UNAVAILABLE_DRIVER_ID)

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ERR_DRIVER_001"
    assert body["message"] == "Driver is not currently available"


@pytest.mark.asyncio
async def test_illegal_transition_lists_allowed_actions(client, parcel, drivers, admin, driver):
    await transition(client, parcel["id"], admin, "assign", driver_id=DRIVER_ID)

    response = await transition(client, parcel["id"], driver, "arrive")

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ERR_PARCEL_002"
    assert body["details"]["allowed_actions"] == ["reassign", "pickup", "cancel"]


@pytest.mark.asyncio
async def test_reassign_after_pickup_conflict(client, parcel, drivers, admin, driver):
    await transition(client, parcel["id"], admin, "assign", driver_id=DRIVER_ID)
    await transition(client, parcel["id"], driver, "pickup")

    response = await transition(client, parcel["id"], admin, "reassign", driver_id=SECOND_DRIVER_ID)

    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_PARCEL_003"


@pytest.mark.asyncio
async def test_role_action_permissions(client, parcel, drivers, admin, driver, sender, auth_headers):
    # Customers cannot assign
    response = await transition(client, parcel["id"], sender, "assign", driver_id=DRIVER_ID)
    assert response.status_code == 403

    # Drivers cannot act on parcels that are not theirs
    response = await transition(client, parcel["id"], driver, "pickup")
    assert response.status_code == 403

    await transition(client, parcel["id"], admin, "assign", driver_id=DRIVER_ID)

    other_driver = auth_headers(SECOND_DRIVER_ID, "DRIVER")
    response = await transition(client, parcel["id"], other_driver, "pickup")
    assert response.status_code == 403

    # Drivers cannot cancel
    response = await transition(client, parcel["id"], driver, "cancel")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_only_recipient_confirms_and_completes(client, parcel, drivers, admin, driver, sender, recipient):
    pid = parcel["id"]
    await transition(client, pid, admin, "assign", driver_id=DRIVER_ID)
    for action in ("pickup", "depart", "arrive"):
        await transition(client, pid, driver, action)

    response = await transition(client, pid, sender, "confirm_delivery")
    assert response.status_code == 403

    await transition(client, pid, recipient, "confirm_delivery")

    response = await transition(client, pid, sender, "complete")
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_FORBIDDEN"

    response = await transition(client, pid, recipient, "complete")
    assert response.status_code == 200
    assert response.json()["parcel"]["completed_by"] == RECIPIENT_ID


@pytest.mark.asyncio
async def test_sender_can_cancel_recipient_cannot(client, parcel, sender, recipient):
    response = await transition(client, parcel["id"], recipient, "cancel")
    assert response.status_code == 403

    response = await transition(client, parcel["id"], sender, "cancel", notes="No longer needed")
    assert response.status_code == 200
    assert response.json()["parcel"]["status"] == "cancelled"
    assert response.json()["history_entry"]["notes"] == "No longer needed"


@pytest.mark.asyncio
async def test_unknown_action_is_validation_error(client, parcel, admin):
    response = await transition(client, parcel["id"], admin, "teleport")
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"


@pytest.mark.asyncio
async def test_transition_events_published(client, parcel, drivers, admin, mock_redis):
    await transition(client, parcel["id"], admin, "assign", driver_id=DRIVER_ID)

    channels = [channel for channel, _ in mock_redis.published]
    assert channels == ["parcel-events", "parcel-events"]


@pytest.mark.asyncio
async def test_auto_confirm_requires_admin(client, parcel, sender, admin):
    response = await client.post("/v1/parcels/auto-confirm", headers=sender)
    assert response.status_code == 403

    response = await client.post("/v1/parcels/auto-confirm", headers=admin)
    assert response.status_code == 200
    assert response.json() == {"confirmed_parcel_ids": [], "skipped_parcel_ids": []}


@pytest.mark.asyncio
async def test_auto_confirm_over_http(client, parcel, drivers, admin, driver):
    pid = parcel["id"]
    await transition(client, pid, admin, "assign", driver_id=DRIVER_ID)
    for action in ("pickup", "depart", "arrive"):
        await transition(client, pid, driver, action)

    response = await client.post("/v1/parcels/auto-confirm", params={"older_than_hours": 0}, headers=admin)

    assert response.json()["confirmed_parcel_ids"] == [pid]
    parcel_view = (await client.get(f"/v1/parcels/{pid}", headers=admin)).json()
    assert parcel_view["status"] == "delivered"


# Dispatch

@pytest.mark.asyncio
async def test_driver_candidates(client, drivers, admin):
    response = await client.get("/v1/drivers/candidates", headers=admin)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [d["id"] for d in data["drivers"]] == [DRIVER_ID, SECOND_DRIVER_ID]


@pytest.mark.asyncio
async def test_driver_candidates_filters(client, drivers, admin, parcel):
    response = await client.get("/v1/drivers/candidates", params={"vehicle_type": "van"}, headers=admin)
    assert [d["id"] for d in response.json()["drivers"]] == [SECOND_DRIVER_ID]

    response = await client.get("/v1/drivers/candidates", params={"min_rating": 4.7}, headers=admin)
    assert [d["id"] for d in response.json()["drivers"]] == [SECOND_DRIVER_ID]

    response = await client.get("/v1/drivers/candidates", params={"exclude_ids": [SECOND_DRIVER_ID]}, headers=admin)
    assert [d["id"] for d in response.json()["drivers"]] == [DRIVER_ID]

    await transition(client, parcel["id"], admin, "assign", driver_id=DRIVER_ID)
    response = await client.get("/v1/drivers/candidates", params={"parcel_id": parcel["id"]}, headers=admin)
    assert [d["id"] for d in response.json()["drivers"]] == [SECOND_DRIVER_ID]


@pytest.mark.asyncio
async def test_driver_candidates_admin_only(client, drivers, driver):
    response = await client.get("/v1/drivers/candidates", headers=driver)
    assert response.status_code == 403


# Geocoding

@pytest.mark.asyncio
async def test_geo_resolve(client, sender):
    response = await client.get("/v1/geo/resolve", params={"address": "Westlands, Nairobi"}, headers=sender)

    assert response.status_code == 200
    assert response.json() == {
        "lat": -1.2676,
        "lng": 36.8108,
        "canonical_address": "Westlands, Nairobi, Kenya",
        "is_fallback": False,
    }


@pytest.mark.asyncio
async def test_geo_resolve_not_found_and_fallback(client, sender):
    response = await client.get("/v1/geo/resolve", params={"address": "Nowhere Street"}, headers=sender)
    assert response.status_code == 404

    response = await client.get(
        "/v1/geo/resolve", params={"address": "Nowhere Street", "fallback": True}, headers=sender
    )
    assert response.status_code == 200
    assert response.json()["is_fallback"] is True
    assert response.json()["canonical_address"] == "Nairobi, Kenya"


@pytest.mark.asyncio
async def test_geo_resolve_short_address(client, sender):
    response = await client.get("/v1/geo/resolve", params={"address": "ab"}, headers=sender)
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_GEO_001"


@pytest.mark.asyncio
async def test_geo_resolve_timeout_is_service_unavailable(client, sender, fake_provider, geocoder):
    geocoder.timeout = 0.05
    fake_provider.delay = 1.0

    response = await client.get("/v1/geo/resolve", params={"address": "Westlands, Nairobi"}, headers=sender)

    assert response.status_code == 503
    assert response.json()["error_code"] == "ERR_SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_geo_suggest(client, sender, fake_provider):
    response = await client.get("/v1/geo/suggest", params={"q": "nairobi", "limit": 5}, headers=sender)
    assert response.status_code == 200
    assert [s["name"] for s in response.json()["suggestions"]] == ["Kenyatta Avenue", "Westlands"]

    fake_provider.fail_with = httpx.ConnectError("unreachable")
    response = await client.get("/v1/geo/suggest", params={"q": "mombasa"}, headers=sender)
    assert response.status_code == 200
    assert response.json()["suggestions"] == []


@pytest.mark.asyncio
async def test_geo_reverse(client, sender):
    response = await client.get("/v1/geo/reverse", params={"lat": -4.04, "lng": 39.66}, headers=sender)
    assert response.status_code == 200
    assert "Mombasa" in response.json()["address"]

    response = await client.get("/v1/geo/reverse", params={"lat": 120, "lng": 39.66}, headers=sender)
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_GEO_002"


@pytest.mark.asyncio
async def test_geo_estimate_waypoints(client, sender):
    body = {"waypoints": [{"lat": -1.2921, "lng": 36.8219}, {"lat": -4.0435, "lng": 39.6682}]}
    response = await client.post("/v1/geo/estimate", json=body, headers=sender)

    assert response.status_code == 200
    assert response.json()["eta_minutes"] == 890
    assert abs(response.json()["distance_km"] - 440) <= 5


@pytest.mark.asyncio
async def test_geo_estimate_addresses(client, sender):
    body = {"pickup_address": "Westlands, Nairobi", "delivery_address": "Kenyatta Avenue, Nairobi"}
    response = await client.post("/v1/geo/estimate", json=body, headers=sender)

    assert response.status_code == 200
    assert response.json()["eta_minutes"] == 25
    assert len(response.json()["waypoints"]) == 2


@pytest.mark.asyncio
async def test_geo_estimate_requires_route(client, sender):
    response = await client.post("/v1/geo/estimate", json={"pickup_address": "Westlands"}, headers=sender)
    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_BAD_REQUEST"
