"""Tests for DeliveryService: ranking, assignment, progress, ETAs and reporting."""

from decimal import Decimal

import pytest

from foodhub.core.cache import redis_cache
from foodhub.models.customer import CustomerAddress
from foodhub.models.delivery import DeliveryTracking, Driver, DriverWorkingZone, OrderAssignment
from foodhub.models.order import OrderStatus
from foodhub.services.delivery_service import (
    DeliveryService,
    haversine_km,
    normalize_assignment_status,
    validate_location,
)


@pytest.fixture
def service(db_session):
    return DeliveryService(db_session)


@pytest.fixture
def assignment(service, order, driver):
    return service.assign_order_to_driver(order)


# ============== Geometry helpers ==============

class TestGeometry:
    def test_haversine_one_degree_at_equator(self):
        assert haversine_km(0, 0, 0, 1) == pytest.approx(111.19, abs=0.1)

    def test_haversine_same_point(self):
        assert haversine_km(40.7, -74.0, 40.7, -74.0) == 0

    def test_validate_location(self):
        assert validate_location({"latitude": 40.7, "longitude": -74.0})
        assert not validate_location({"latitude": 91, "longitude": 0})
        assert not validate_location({"latitude": 40.7})

    def test_status_aliases(self):
        assert normalize_assignment_status("pickup") == "picked_up"
        assert normalize_assignment_status("en_route") == "out_for_delivery"
        assert normalize_assignment_status("delivered") == "delivered"


# ============== Drivers ==============

class TestCreateDriver:
    def _data(self, **overrides):
        data = {
            "first_name": "Lena",
            "last_name": "Park",
            "email": "lena.park@example.com",
            "phone": "+15550002222",
            "vehicle_type": "scooter",
            "bank_account_number": "000123456789",
            "bank_name": "Harbor Credit Union",
            "working_zones": [
                {"zone_name": "Downtown", "latitude": 40.7128, "longitude": -74.0060, "radius": 4},
            ],
        }
        data.update(overrides)
        return data

    def test_new_driver_defaults(self, service):
        driver = service.create_driver(self._data())
        assert driver.status == "offline"
        assert driver.is_online is False
        assert driver.is_available is False
        assert driver.rating == 5.0
        assert driver.total_deliveries == 0
        assert driver.documents["license_verified"] is False
        assert driver.working_zones[0].radius_km == 4
        assert "Harbor Credit Union" in driver.banking_info

    def test_duplicate_email_rejected(self, service):
        service.create_driver(self._data())
        with pytest.raises(ValueError, match="email"):
            service.create_driver(self._data(phone="+15550003333"))


# ============== Ranking ==============

class TestRanking:
    def test_driver_score(self):
        driver = Driver(rating=4.0, completed_deliveries=8, total_deliveries=10)
        assert DeliveryService.driver_score(driver, 1.0) == pytest.approx(1.2 + 0.2 + 0.24)

    def test_score_without_distance(self):
        driver = Driver(rating=5.0, completed_deliveries=0, total_deliveries=0)
        assert DeliveryService.driver_score(driver, None) == pytest.approx(1.5)

    def test_nearest_driver_first(self, service, branch, driver_factory):
        far = driver_factory("far@example.com", latitude=40.80, longitude=-73.90)
        near = driver_factory("near@example.com")
        ranked = service.rank_available_drivers(branch.latitude, branch.longitude)
        assert [entry["driver"].id for entry in ranked] == [near.id, far.id]
        assert ranked[0]["distance"] < ranked[1]["distance"]

    def test_offline_and_unavailable_excluded(self, service, branch, driver_factory):
        driver_factory("offline@example.com", status="offline", is_online=False)
        driver_factory("busy@example.com", is_available=False)
        assert service.rank_available_drivers(branch.latitude, branch.longitude) == []

    def test_max_distance_filter(self, service, branch, driver_factory):
        driver_factory("far@example.com", latitude=40.80, longitude=-73.90)
        near = driver_factory("near@example.com")
        ranked = service.rank_available_drivers(branch.latitude, branch.longitude, {"max_distance": 2})
        assert [entry["driver"].id for entry in ranked] == [near.id]

    def test_vehicle_filter(self, service, branch, driver_factory):
        driver_factory("car@example.com")
        bike = driver_factory("bike@example.com", vehicle_type="bicycle")
        drivers = service.get_available_drivers(branch.latitude, branch.longitude, {"vehicle_type": "bicycle"})
        assert drivers == [bike]

    def test_driver_at_capacity_excluded(self, service, db_session, order, branch, driver_factory):
        full = driver_factory("full@example.com", max_orders=1)
        db_session.add(OrderAssignment(driver_id=full.id, order_id=order.id, status="accepted"))
        db_session.commit()
        assert service.rank_available_drivers(branch.latitude, branch.longitude) == []


# ============== Assignment and responses ==============

class TestAssignment:
    def test_assigns_best_driver(self, service, order, driver):
        assignment = service.assign_order_to_driver(order)
        assert assignment.driver_id == driver.id
        assert assignment.status == "assigned"
        assert assignment.delivery_fee == Decimal("3.50")
        assert assignment.estimated_pickup_time is not None

    def test_no_drivers_returns_none(self, service, order):
        assert service.assign_order_to_driver(order) is None

    def test_requested_driver(self, service, order, driver, driver_factory):
        other = driver_factory("other@example.com", latitude=40.75, longitude=-73.95)
        assignment = service.assign_order_to_driver(order, {"driver_id": other.id})
        assert assignment.driver_id == other.id

    def test_requested_driver_unavailable(self, service, order, driver):
        with pytest.raises(ValueError, match="not available"):
            service.assign_order_to_driver(order, {"driver_id": 9999})

    def test_cannot_assign_twice(self, service, order, assignment):
        with pytest.raises(ValueError, match="active driver assignment"):
            service.assign_order_to_driver(order)

    def test_cannot_assign_delivered_order(self, service, db_session, customer, branch, driver, order_factory):
        done = order_factory(customer, branch, number="ORD-DONE", status=OrderStatus.DELIVERED)
        with pytest.raises(ValueError):
            service.assign_order_to_driver(done)

    def test_driver_marked_unavailable_at_capacity(self, service, db_session, order, driver_factory):
        solo = driver_factory("solo@example.com", max_orders=1)
        service.assign_order_to_driver(order)
        db_session.refresh(solo)
        assert solo.is_available is False


class TestDriverResponse:
    def test_accept(self, service, assignment):
        result = service.handle_driver_response(assignment, "accepted", notes="On my way")
        assert result["status"] == "accepted"
        assert assignment.status == "accepted"
        assert assignment.driver_response == "accepted"
        assert assignment.response_time is not None

    def test_reject_reassigns(self, service, db_session, assignment, driver_factory):
        backup = driver_factory("backup@example.com", latitude=40.72, longitude=-74.00)
        result = service.handle_driver_response(assignment, "rejected", reason="Too far")
        assert result["status"] == "reassigned"
        assert assignment.status == "rejected"
        assert assignment.rejection_reason == "Too far"
        new_assignment = db_session.get(OrderAssignment, result["new_assignment_id"])
        assert new_assignment.driver_id == backup.id

    def test_reject_without_backup_fails(self, service, assignment):
        result = service.handle_driver_response(assignment, "rejected", reason="Vehicle issue")
        assert result == {"status": "failed", "message": "No other drivers available"}

    def test_response_only_once(self, service, assignment):
        service.handle_driver_response(assignment, "accepted")
        with pytest.raises(ValueError):
            service.handle_driver_response(assignment, "rejected", reason="Changed mind")


# ============== Status progression ==============

class TestAssignmentStatus:
    @pytest.mark.asyncio
    async def test_pickup_alias_moves_order_out_for_delivery(self, service, assignment, order):
        await service.update_assignment_status(assignment, "pickup")
        assert assignment.status == "picked_up"
        assert assignment.actual_pickup_time is not None
        assert order.status == OrderStatus.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_delivered_updates_driver_stats(self, service, db_session, assignment, order, driver):
        await service.update_assignment_status(assignment, "accepted")
        await service.update_assignment_status(assignment, "en_route")
        await service.update_assignment_status(assignment, "delivered")
        db_session.refresh(driver)
        assert order.status == OrderStatus.DELIVERED
        assert assignment.completed_at is not None
        assert driver.completed_deliveries == 1
        assert driver.total_deliveries == 1
        assert driver.total_earnings == Decimal("3.50")

    @pytest.mark.asyncio
    async def test_backward_move_rejected(self, service, assignment):
        await service.update_assignment_status(assignment, "picked_up")
        with pytest.raises(ValueError):
            await service.update_assignment_status(assignment, "accepted")

    @pytest.mark.asyncio
    async def test_cancel_counts_against_driver(self, service, db_session, assignment, driver):
        await service.update_assignment_status(assignment, "cancelled")
        db_session.refresh(driver)
        assert driver.cancelled_deliveries == 1
        with pytest.raises(ValueError):
            await service.update_assignment_status(assignment, "delivered")


# ============== Live tracking ==============

class TestTracking:
    @pytest.mark.asyncio
    async def test_route_progress_moves_picked_up_to_en_route(self, service, db_session, assignment, address):
        await service.update_assignment_status(assignment, "picked_up")
        result = await service.update_route_progress(
            assignment, {"latitude": 40.7300, "longitude": -73.9870, "speed": 22.5},
        )
        assert result["progress"]["status_changed"] is True
        assert result["progress"]["new_status"] == "out_for_delivery"
        assert result["progress"]["approaching"] is True
        assert result["eta"]["minutes"] is not None
        assert db_session.query(DeliveryTracking).count() == 1

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, service, assignment):
        with pytest.raises(ValueError, match="Invalid location"):
            await service.update_route_progress(assignment, {"latitude": 200, "longitude": 0})

    @pytest.mark.asyncio
    async def test_broadcast_location_flags_approaching_orders(self, service, assignment, driver, order):
        result = await service.broadcast_driver_location(driver, {"latitude": 40.7300, "longitude": -73.9870})
        assert result["active_deliveries"] == 1
        assert result["approaching_order_ids"] == [order.id]
        assert driver.current_latitude == 40.7300

    def test_track_progress(self, service, assignment, address):
        progress = service.track_delivery_progress(assignment)
        assert progress["progress_percentage"] == 0
        assert progress["distance_remaining"] is not None
        assert progress["order_details"]["pickup_address"] == "1 Pier Road"

    @pytest.mark.asyncio
    async def test_tracking_history_newest_first(self, service, driver):
        await service.broadcast_driver_location(driver, {"latitude": 40.71, "longitude": -74.00})
        await service.broadcast_driver_location(driver, {"latitude": 40.72, "longitude": -73.99})
        history = service.get_driver_tracking_history(driver)
        assert len(history) == 2
        assert history[0].latitude == 40.72


# ============== ETAs and routes ==============

class TestEta:
    def test_customer_eta(self, service, order, driver, address):
        eta = service.calculate_customer_eta(order, driver)
        assert eta["preparation_time"] == 20
        assert 2.4 < eta["distance"] < 2.8
        assert eta["multi_delivery_delay"] == 0
        assert eta["total_time"] == pytest.approx(20 + eta["delivery_time"])

    def test_multi_delivery_delay(self, service, db_session, customer, branch, address, driver, order_factory):
        orders = [order_factory(customer, branch, address, number=f"ORD-M{i}") for i in range(3)]
        for o in orders:
            db_session.add(OrderAssignment(driver_id=driver.id, order_id=o.id, status="accepted"))
        db_session.commit()
        eta = service.calculate_customer_eta(orders[0], driver)
        assert eta["driver_deliveries_count"] == 3
        assert eta["multi_delivery_delay"] == 20

    def test_eta_without_driver(self, service, order):
        with pytest.raises(ValueError, match="No driver assigned"):
            service.calculate_customer_eta(order)

    def test_eta_uses_current_assignment(self, service, order, assignment, driver):
        assert service.calculate_customer_eta(order)["driver_id"] == driver.id

    def test_route_eta(self, service, driver):
        route = {"waypoints": [
            {"distance": 15, "stop_time": 5, "type": "pickup"},
            {"distance": 0, "stop_time": 0, "type": "delivery"},
        ]}
        result = service.calculate_route_eta(route, driver)
        assert result["total_estimated_time"] == 35.0
        assert len(result["waypoints"]) == 2


class TestRouteOptimization:
    def test_nearest_neighbour_order(self, service):
        result = service.optimize_delivery_route([
            {"latitude": 0, "longitude": 0, "name": "start"},
            {"latitude": 0, "longitude": 2, "name": "far"},
            {"latitude": 0, "longitude": 1, "name": "near"},
        ])
        assert [w["name"] for w in result["waypoints"]] == ["start", "near", "far"]
        assert [w["sequence"] for w in result["waypoints"]] == [1, 2, 3]
        assert result["total_distance"] == pytest.approx(222.4, abs=0.5)
        assert result["estimated_cost"] > result["fuel_cost"]

    def test_traffic_multiplier(self, service):
        points = [{"latitude": 0, "longitude": 0}, {"latitude": 0, "longitude": 0.1}]
        normal = service.optimize_delivery_route(points)
        heavy = service.optimize_delivery_route(points, {"traffic_conditions": {"multiplier": 2.0}})
        assert heavy["total_time"] > normal["total_time"]

    def test_needs_two_waypoints(self, service):
        with pytest.raises(ValueError):
            service.optimize_delivery_route([{"latitude": 0, "longitude": 0}])


# ============== Batching and tracking links ==============

class TestBatching:
    def test_nearby_orders_batched(self, service, db_session, customer, branch, address, order_factory):
        uptown = CustomerAddress(customer_id=customer.id, address="900 North Road", city="Springfield",
                                 latitude=40.90, longitude=-73.80)
        db_session.add(uptown)
        db_session.commit()
        first = order_factory(customer, branch, address, number="ORD-B1")
        second = order_factory(customer, branch, address, number="ORD-B2")
        far = order_factory(customer, branch, uptown, number="ORD-B3")

        batches = service.batch_orders_for_delivery([first, second, far])
        assert [b["order_ids"] for b in batches] == [[first.id, second.id], [far.id]]
        assert batches[0]["total_amount"] == 57.0
        assert batches[0]["route"]["waypoints"][0]["type"] == "pickup"

    def test_batch_size_limit(self, service, customer, branch, address, order_factory):
        orders = [order_factory(customer, branch, address, number=f"ORD-L{i}") for i in range(4)]
        batches = service.batch_orders_for_delivery(orders, max_per_batch=3)
        assert [b["orders_count"] for b in batches] == [3, 1]


class TestTrackingLink:
    def test_generate_and_resolve(self, service, order):
        link = service.generate_tracking_link(order)
        assert len(link["token"]) == 64
        assert link["tracking_url"].endswith(link["token"])
        assert redis_cache.ttl(f"tracking_link:{link['token']}") > 0
        assert service.resolve_tracking_token(link["token"]).id == order.id

    def test_unknown_token(self, service):
        assert service.resolve_tracking_token("0" * 64) is None


# ============== Exceptions ==============

class TestDeliveryExceptions:
    @pytest.mark.asyncio
    async def test_customer_unavailable_retry(self, service, assignment):
        result = await service.handle_delivery_exceptions(
            assignment, "customer_unavailable", {"customer_contact_attempts": 1},
        )
        assert result["status"] == "retry_contact"

    @pytest.mark.asyncio
    async def test_customer_unavailable_return(self, service, assignment):
        result = await service.handle_delivery_exceptions(
            assignment, "customer_unavailable", {"customer_contact_attempts": 3},
        )
        assert result["status"] == "return_to_restaurant"

    @pytest.mark.asyncio
    async def test_address_not_found_with_alternative(self, service, assignment, order):
        result = await service.handle_delivery_exceptions(
            assignment, "address_not_found", {"alternative_address": "7 Oak Lane"},
        )
        assert result["status"] == "address_updated"
        assert order.delivery_address == "7 Oak Lane"

    @pytest.mark.asyncio
    async def test_delay_pushes_eta(self, service, assignment):
        result = await service.handle_delivery_exceptions(assignment, "traffic_delay", {"delay_minutes": 20})
        assert result["status"] == "delay_recorded"
        assert result["delay_minutes"] == 20
        assert assignment.estimated_delivery_time is not None

    @pytest.mark.asyncio
    async def test_vehicle_breakdown_reassigns(self, service, db_session, assignment, driver_factory):
        backup = driver_factory("backup@example.com", latitude=40.72, longitude=-74.00)
        result = await service.handle_delivery_exceptions(assignment, "vehicle_breakdown")
        assert result["status"] == "reassigned"
        assert assignment.status == "cancelled"
        assert db_session.get(OrderAssignment, result["new_assignment_id"]).driver_id == backup.id

    @pytest.mark.asyncio
    async def test_security_issue_escalates(self, service, assignment):
        result = await service.handle_delivery_exceptions(
            assignment, "security_issue", {"description": "Aggressive dog at the gate"},
        )
        assert result["status"] == "escalated_to_security"
        assert result["incident_id"].startswith("SEC-")

    @pytest.mark.asyncio
    async def test_unknown_exception(self, service, assignment):
        result = await service.handle_delivery_exceptions(assignment, "alien_invasion")
        assert result["status"] == "unknown_exception"


# ============== Reporting ==============

async def deliver(service, assignment):
    service.handle_driver_response(assignment, "accepted")
    await service.update_assignment_status(assignment, "picked_up")
    await service.update_assignment_status(assignment, "delivered")
    return assignment


class TestReporting:
    @pytest.mark.asyncio
    async def test_delivery_report(self, service, assignment, driver):
        await deliver(service, assignment)
        report = service.generate_delivery_reports()
        assert report["total_deliveries"] == 1
        assert report["completed_deliveries"] == 1
        assert report["delivery_success_rate"] == 100.0
        assert report["driver_performance"][0]["driver_id"] == driver.id
        assert report["cost_analysis"]["total_delivery_fees"] == 3.5

    @pytest.mark.asyncio
    async def test_report_status_filter(self, service, assignment):
        await deliver(service, assignment)
        assert service.generate_delivery_reports({"status": "cancelled"})["total_deliveries"] == 0

    @pytest.mark.asyncio
    async def test_kpis(self, service, assignment):
        await deliver(service, assignment)
        kpis = service.get_delivery_kpis()
        assert kpis["deliveries_today"] == 1
        assert kpis["active_deliveries"] == 0
        assert kpis["online_drivers"] == 1
        assert kpis["acceptance_rate"] == 100.0
        assert kpis["customer_satisfaction_score"] == 4.8

    @pytest.mark.asyncio
    async def test_zone_optimization(self, service, db_session, assignment, driver, address):
        await deliver(service, assignment)
        db_session.add(DriverWorkingZone(
            driver_id=driver.id,
            zone_name="East Village",
            coordinates={"latitude": address.latitude, "longitude": address.longitude},
            radius_km=2,
        ))
        db_session.commit()
        result = service.optimize_delivery_zones()
        assert result["zone_adjustments"][0]["recommendation"] == "split_or_add_drivers"
        assert result["high_demand_areas"][0]["deliveries"] == 1
        assert result["workload_balance"]["average_deliveries_per_driver"] == 1
