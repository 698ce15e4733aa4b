"""Tests for the delivery, driver and working-zone endpoints."""

import pytest

from foodhub.models.delivery import Driver, DriverWorkingZone, OrderAssignment


@pytest.fixture
def assigned(client, dispatch_headers, order, driver):
    response = client.post("/api/delivery/orders/assign", json={"order_id": order.id}, headers=dispatch_headers)
    assert response.status_code == 200
    return response.json()["data"]


# ============== Access control ==============

class TestDeliveryAccess:
    def test_cashier_forbidden(self, client, cashier_headers):
        response = client.get("/api/delivery/kpis", headers=cashier_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "This action is unauthorized."

    def test_owner_forbidden_from_delivery_ops(self, client, owner_headers):
        assert client.get("/api/delivery/kpis", headers=owner_headers).status_code == 403

    def test_unauthenticated(self, client):
        assert client.get("/api/delivery/kpis").status_code == 401

    def test_super_admin_allowed(self, client, admin_headers):
        response = client.get("/api/delivery/kpis", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True


# ============== Drivers ==============

class TestDriverEndpoints:
    def _payload(self, **overrides):
        payload = {
            "first_name": "Lena",
            "last_name": "Park",
            "email": "lena.park@example.com",
            "phone": "+15550002222",
            "password": "ride-safe-2024",
            "vehicle_type": "scooter",
            "working_zones": [
                {"zone_name": "Downtown", "latitude": 40.7128, "longitude": -74.0060, "radius": 4},
            ],
        }
        payload.update(overrides)
        return payload

    def test_create_driver(self, client, dispatch_headers):
        response = client.post("/api/delivery/drivers", json=self._payload(), headers=dispatch_headers)
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Driver created successfully"
        data = body["data"]
        assert data["status"] == "offline"
        assert data["rating"] == 5.0
        assert data["working_zones"][0]["zone_name"] == "Downtown"
        assert "password_hash" not in data
        assert "banking_info" not in data

    def test_duplicate_driver_email(self, client, dispatch_headers, driver):
        response = client.post(
            "/api/delivery/drivers",
            json=self._payload(email=driver.email),
            headers=dispatch_headers,
        )
        assert response.status_code == 422

    def test_short_password(self, client, dispatch_headers):
        response = client.post("/api/delivery/drivers", json=self._payload(password="short"), headers=dispatch_headers)
        assert response.status_code == 422

    def test_update_status(self, client, dispatch_headers, driver):
        response = client.put(
            f"/api/delivery/drivers/{driver.id}/status",
            json={"status": "on_break", "is_available": False},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "on_break"
        assert data["is_available"] is False
        assert data["last_active_at"] is not None

    def test_update_status_unknown_driver(self, client, dispatch_headers):
        response = client.put("/api/delivery/drivers/999/status", json={"status": "online"}, headers=dispatch_headers)
        assert response.status_code == 404

    def test_available_drivers(self, client, dispatch_headers, driver, branch):
        response = client.get(
            f"/api/delivery/drivers/available?latitude={branch.latitude}&longitude={branch.longitude}",
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data[0]["id"] == driver.id
        assert data[0]["distance"] < 1
        assert data[0]["score"] > 0

    def test_available_drivers_needs_coordinates(self, client, dispatch_headers):
        assert client.get("/api/delivery/drivers/available", headers=dispatch_headers).status_code == 422

    def test_broadcast_location(self, client, dispatch_headers, driver):
        response = client.post(
            f"/api/delivery/drivers/{driver.id}/location",
            json={"latitude": 40.7200, "longitude": -74.0010, "speed": 18},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["active_deliveries"] == 0

    def test_location_out_of_range(self, client, dispatch_headers, driver):
        response = client.post(
            f"/api/delivery/drivers/{driver.id}/location",
            json={"latitude": 95, "longitude": 0},
            headers=dispatch_headers,
        )
        assert response.status_code == 422

    def test_tracking_history(self, client, dispatch_headers, driver):
        client.post(f"/api/delivery/drivers/{driver.id}/location",
                    json={"latitude": 40.7200, "longitude": -74.0010}, headers=dispatch_headers)
        response = client.get(f"/api/delivery/drivers/{driver.id}/tracking-history", headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"][0]["latitude"] == 40.72

    def test_tracking_history_bad_range(self, client, dispatch_headers, driver):
        response = client.get(
            f"/api/delivery/drivers/{driver.id}/tracking-history"
            "?start_date=2026-02-01T00:00:00&end_date=2026-01-01T00:00:00",
            headers=dispatch_headers,
        )
        assert response.status_code == 422


class TestDriverManagement:
    def test_owner_lists_drivers(self, client, owner_headers, driver):
        response = client.get("/api/drivers", headers=owner_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_filter_by_vehicle(self, client, owner_headers, driver, driver_factory):
        driver_factory("bike@example.com", vehicle_type="bicycle")
        body = client.get("/api/drivers?vehicle_type=bicycle", headers=owner_headers).json()
        assert [d["email"] for d in body["items"]] == ["bike@example.com"]

    def test_cashier_cannot_list(self, client, cashier_headers):
        assert client.get("/api/drivers", headers=cashier_headers).status_code == 403

    def test_delete_driver(self, client, db_session, dispatch_headers, driver):
        assert client.delete(f"/api/drivers/{driver.id}", headers=dispatch_headers).status_code == 204
        assert db_session.query(Driver).count() == 0

    def test_working_zone_crud(self, client, db_session, dispatch_headers, driver):
        created = client.post("/api/driver-working-zones", json={
            "driver_id": driver.id,
            "zone_name": "Midtown",
            "coordinates": {"latitude": 40.7549, "longitude": -73.9840},
            "radius_km": 3,
            "start_time": "08:00",
            "end_time": "16:00",
        }, headers=dispatch_headers)
        assert created.status_code == 201
        zone_id = created.json()["id"]

        updated = client.put(f"/api/driver-working-zones/{zone_id}", json={"radius_km": 6}, headers=dispatch_headers)
        assert updated.json()["radius_km"] == 6

        listed = client.get(f"/api/driver-working-zones?driver_id={driver.id}", headers=dispatch_headers)
        assert listed.json()["total"] == 1

        assert client.delete(f"/api/driver-working-zones/{zone_id}", headers=dispatch_headers).status_code == 204
        assert db_session.query(DriverWorkingZone).count() == 0

    def test_working_zone_needs_coordinates(self, client, dispatch_headers, driver):
        response = client.post("/api/driver-working-zones", json={
            "driver_id": driver.id,
            "zone_name": "Nowhere",
            "coordinates": {"latitude": 40.7},
        }, headers=dispatch_headers)
        assert response.status_code == 422


# ============== Assignments ==============

class TestAssignmentEndpoints:
    def test_assign(self, assigned, driver, order):
        assert assigned["driver_id"] == driver.id
        assert assigned["order_id"] == order.id
        assert assigned["status"] == "assigned"

    def test_assign_without_drivers(self, client, dispatch_headers, order):
        response = client.post("/api/delivery/orders/assign", json={"order_id": order.id}, headers=dispatch_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "No available drivers for this order"

    def test_assign_twice(self, client, dispatch_headers, assigned, order):
        response = client.post("/api/delivery/orders/assign", json={"order_id": order.id}, headers=dispatch_headers)
        assert response.status_code == 400
        assert response.json()["message"].startswith("Failed to assign order to driver:")

    def test_assign_unknown_order(self, client, dispatch_headers):
        response = client.post("/api/delivery/orders/assign", json={"order_id": 999}, headers=dispatch_headers)
        assert response.status_code == 404

    def test_accept(self, client, dispatch_headers, assigned):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/response",
            json={"response": "accepted"},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "accepted"

    def test_reject_requires_reason(self, client, dispatch_headers, assigned):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/response",
            json={"response": "rejected"},
            headers=dispatch_headers,
        )
        assert response.status_code == 422

    def test_reject_without_backup(self, client, dispatch_headers, assigned):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/response",
            json={"response": "rejected", "reason": "Too far"},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "failed"

    def test_status_progression(self, client, db_session, dispatch_headers, assigned, order):
        url = f"/api/delivery/assignments/{assigned['id']}/status"
        assert client.put(url, json={"status": "pickup"}, headers=dispatch_headers).json()["data"]["status"] == "picked_up"
        response = client.put(url, json={"status": "delivered"}, headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["actual_delivery_time"] is not None
        db_session.refresh(order)
        assert order.status.value == "delivered"

    def test_invalid_status_move(self, client, dispatch_headers, assigned):
        url = f"/api/delivery/assignments/{assigned['id']}/status"
        client.put(url, json={"status": "delivered"}, headers=dispatch_headers)
        response = client.put(url, json={"status": "picked_up"}, headers=dispatch_headers)
        assert response.status_code == 400
        assert response.json()["message"].startswith("Failed to update assignment status:")

    def test_unknown_status_value(self, client, dispatch_headers, assigned):
        url = f"/api/delivery/assignments/{assigned['id']}/status"
        assert client.put(url, json={"status": "teleported"}, headers=dispatch_headers).status_code == 422

    def test_progress(self, client, dispatch_headers, assigned):
        response = client.get(f"/api/delivery/assignments/{assigned['id']}/progress", headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["current_status"] == "assigned"

    def test_route_progress(self, client, dispatch_headers, assigned):
        client.put(f"/api/delivery/assignments/{assigned['id']}/status",
                   json={"status": "picked_up"}, headers=dispatch_headers)
        response = client.put(
            f"/api/delivery/route/{assigned['id']}/progress",
            json={"latitude": 40.7250, "longitude": -73.9950},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["progress"]["new_status"] == "out_for_delivery"

    def test_missing_assignment(self, client, dispatch_headers):
        assert client.get("/api/delivery/assignments/999/progress", headers=dispatch_headers).status_code == 404

    def test_notification(self, client, dispatch_headers, assigned, order):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/notifications",
            json={"event": "approaching"},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["order_number"] == order.order_number
        assert "almost there" in data["message"]

    def test_exception(self, client, dispatch_headers, assigned):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/exceptions",
            json={"exception_type": "weather_delay", "details": {"delay_minutes": 15}},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "delay_recorded"

    def test_unknown_exception_type(self, client, dispatch_headers, assigned):
        response = client.post(
            f"/api/delivery/assignments/{assigned['id']}/exceptions",
            json={"exception_type": "meteor_strike"},
            headers=dispatch_headers,
        )
        assert response.status_code == 422


# ============== Orders, routes and reports ==============

class TestDeliveryOrders:
    def test_customer_eta(self, client, dispatch_headers, assigned, order):
        response = client.get(f"/api/delivery/orders/{order.id}/eta", headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["preparation_time"] == 20

    def test_eta_without_driver(self, client, dispatch_headers, order):
        response = client.get(f"/api/delivery/orders/{order.id}/eta", headers=dispatch_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "No driver assigned to this order"

    def test_batch(self, client, dispatch_headers, customer, branch, address, order, order_factory):
        second = order_factory(customer, branch, address, number="ORD-TEST-000002")
        response = client.post(
            "/api/delivery/orders/batch",
            json={"order_ids": [order.id, second.id]},
            headers=dispatch_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"][0]["order_ids"] == [order.id, second.id]

    def test_batch_unknown_ids(self, client, dispatch_headers, order):
        response = client.post(
            "/api/delivery/orders/batch",
            json={"order_ids": [order.id, 999]},
            headers=dispatch_headers,
        )
        assert response.status_code == 422

    def test_tracking_link(self, client, dispatch_headers, order):
        response = client.get(f"/api/delivery/orders/{order.id}/tracking-link", headers=dispatch_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["token"]) == 64
        assert data["tracking_url"].endswith(data["token"])

    def test_route_optimize(self, client, dispatch_headers):
        response = client.post("/api/delivery/route/optimize", json={"waypoints": [
            {"latitude": 40.7128, "longitude": -74.0060, "type": "pickup"},
            {"latitude": 40.7306, "longitude": -73.9866, "type": "delivery"},
        ]}, headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["total_distance"] > 0

    def test_route_optimize_needs_two_waypoints(self, client, dispatch_headers):
        response = client.post("/api/delivery/route/optimize", json={"waypoints": [
            {"latitude": 40.7128, "longitude": -74.0060, "type": "pickup"},
        ]}, headers=dispatch_headers)
        assert response.status_code == 422

    def test_route_eta_fills_distances(self, client, dispatch_headers, driver):
        response = client.post("/api/delivery/route/calculate-eta", json={
            "driver_id": driver.id,
            "waypoints": [
                {"latitude": 40.7128, "longitude": -74.0060, "type": "pickup", "stop_time": 0},
                {"latitude": 40.7306, "longitude": -73.9866, "type": "delivery"},
            ],
        }, headers=dispatch_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["driver_id"] == driver.id
        assert data["waypoints"][1]["distance"] > 2
        assert data["total_estimated_time"] > 5

    def test_reports(self, client, dispatch_headers, assigned):
        response = client.get("/api/delivery/reports", headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["total_deliveries"] == 1

    def test_reports_bad_status(self, client, dispatch_headers):
        assert client.get("/api/delivery/reports?status=lost", headers=dispatch_headers).status_code == 422

    def test_kpis(self, client, dispatch_headers, assigned):
        data = client.get("/api/delivery/kpis", headers=dispatch_headers).json()["data"]
        assert data["active_deliveries"] == 1
        assert data["online_drivers"] == 1

    def test_zone_optimization(self, client, dispatch_headers):
        response = client.post("/api/delivery/zones/optimize", json={"days": 7}, headers=dispatch_headers)
        assert response.status_code == 200
        assert response.json()["data"]["zone_adjustments"] == []


# ============== Public tracking ==============

class TestPublicTracking:
    def test_track_order(self, client, dispatch_headers, assigned, order, driver):
        token = client.get(
            f"/api/delivery/orders/{order.id}/tracking-link", headers=dispatch_headers
        ).json()["data"]["token"]
        response = client.get(f"/api/tracking/{token}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["order_number"] == order.order_number
        assert data["delivery"]["driver_name"] == driver.first_name
        assert "customer_id" not in data

    def test_track_without_driver(self, client, db_session, order):
        from foodhub.services.delivery_service import DeliveryService

        token = DeliveryService(db_session).generate_tracking_link(order)["token"]
        response = client.get(f"/api/tracking/{token}")
        assert response.status_code == 200
        assert response.json()["data"]["delivery"] is None

    def test_unknown_token(self, client):
        response = client.get(f"/api/tracking/{'a' * 64}")
        assert response.status_code == 404
        assert response.json()["message"] == "Tracking link not found or expired"

    def test_malformed_token(self, client):
        assert client.get("/api/tracking/short").status_code == 422
