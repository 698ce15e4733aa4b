"""Tests for the spin wheel: daily free spins, bought spins, prize draws and redemption."""

from datetime import timedelta
from decimal import Decimal

import pytest

from foodhub.db.base import as_utc, utcnow
from foodhub.models.customer import Customer
from foodhub.models.loyalty import CustomerLoyaltyPoint, LoyaltyPointsHistory, LoyaltyProgram, LoyaltyTier
from foodhub.models.spin_wheel import CustomerSpin, SpinWheel, SpinWheelPrize
from foodhub.services.loyalty_service import InsufficientPointsError
from foodhub.services.spin_wheel_service import SpinWheelError, SpinWheelNotFound, SpinWheelService


class FixedDraw:
    """Stands in for ``random`` with a fixed draw."""

    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
def program(db_session, restaurant):
    program = LoyaltyProgram(restaurant_id=restaurant.id, name="Harbor Points")
    program.tiers = [
        LoyaltyTier(name="bronze", display_name="Bronze", min_points_required=Decimal("0")),
        LoyaltyTier(name="silver", display_name="Silver", min_points_required=Decimal("100")),
        LoyaltyTier(name="gold", display_name="Gold", min_points_required=Decimal("500")),
    ]
    db_session.add(program)
    db_session.commit()
    db_session.refresh(program)
    return program


@pytest.fixture
def account(db_session, program, customer):
    silver = next(t for t in program.tiers if t.name == "silver")
    account = CustomerLoyaltyPoint(
        customer_id=customer.id,
        loyalty_program_id=program.id,
        loyalty_tier_id=silver.id,
        current_points=Decimal("300"),
        total_points_earned=Decimal("300"),
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


def make_wheel(db, prizes, **fields):
    values = dict(
        name="Daily Wheel",
        daily_free_spins_base=1,
        max_daily_spins=3,
        spin_cost_points=Decimal("100"),
        tier_spin_multipliers={"2": 2, "3": 3},
    )
    values.update(fields)
    wheel = SpinWheel(**values)
    wheel.prizes = [SpinWheelPrize(**prize) for prize in prizes]
    db.add(wheel)
    db.commit()
    db.refresh(wheel)
    return wheel


TEN_PERCENT = {"name": "10% off", "type": "discount", "value": Decimal("10"), "probability": Decimal("1")}
FIFTY_POINTS = {"name": "50 points", "type": "bonus_points", "value": Decimal("50"), "probability": Decimal("1")}


@pytest.fixture
def wheel(db_session):
    return make_wheel(db_session, [TEN_PERCENT])


@pytest.fixture
def service(db_session):
    return SpinWheelService(db_session)


# ============== Spin balances ==============

class TestSpinBalances:
    def test_free_spins_scale_with_tier(self, service, customer, account, wheel):
        status = service.status(customer.id)
        assert status["tier_level"] == 2
        assert status["free_spins_remaining"] == 2
        assert status["can_spin"] is True
        assert status["current_points"] == 300.0

    def test_no_loyalty_account_no_free_spins(self, service, customer, wheel):
        status = service.status(customer.id)
        assert status["free_spins_remaining"] == 0
        assert status["can_spin"] is False
        with pytest.raises(SpinWheelError, match="Cannot spin the wheel at this time"):
            service.spin(customer.id)

    def test_free_spins_granted_once_a_day(self, db_session, service, customer, account, wheel):
        service.spin(customer.id)
        db_session.commit()
        assert service.customer_spin(customer.id, wheel).free_spins_remaining == 1

    def test_new_day_resets_allowance(self, db_session, service, customer, account, wheel):
        service.spin(customer.id)
        spin = db_session.query(CustomerSpin).one()
        yesterday = utcnow().date() - timedelta(days=1)
        spin.free_spins_granted_on = yesterday
        spin.last_spin_date = yesterday
        db_session.commit()

        spin = service.customer_spin(customer.id, wheel)
        assert spin.free_spins_remaining == 2
        assert spin.daily_spins_used == 0

    def test_daily_limit(self, db_session, service, customer, account):
        make_wheel(db_session, [TEN_PERCENT], max_daily_spins=1)
        service.spin(customer.id)
        with pytest.raises(SpinWheelError):
            service.spin(customer.id)

    def test_buy_spins_with_points(self, db_session, service, customer, account, wheel):
        spin = service.buy_spins(customer.id, 2)
        db_session.commit()
        assert spin.paid_spins_remaining == 2
        db_session.refresh(account)
        assert account.current_points == Decimal("100.00")
        entry = db_session.query(LoyaltyPointsHistory).one()
        assert entry.source == "spin_purchase"
        assert entry.points_amount == Decimal("-200.00")

    def test_buy_spins_needs_points(self, service, customer, account, wheel):
        with pytest.raises(InsufficientPointsError):
            service.buy_spins(customer.id, 4)

    def test_free_spins_used_first(self, service, customer, account, wheel):
        service.buy_spins(customer.id, 1)
        result = service.spin(customer.id)
        assert result.spin_type == "free"
        spin = service.customer_spin(customer.id, wheel)
        assert (spin.free_spins_remaining, spin.paid_spins_remaining) == (1, 1)

    def test_no_running_wheel(self, service, customer):
        with pytest.raises(SpinWheelNotFound):
            service.status(customer.id)

    def test_ended_wheel_is_not_running(self, db_session, service, customer):
        make_wheel(db_session, [TEN_PERCENT], ends_at=utcnow() - timedelta(days=1))
        assert service.active_wheel() is None


# ============== Prize draws ==============

class TestPrizeDraws:
    def test_cumulative_draw(self, db_session):
        wheel = make_wheel(db_session, [
            {**TEN_PERCENT, "probability": Decimal("0.5")},
            {**FIFTY_POINTS, "probability": Decimal("0.5")},
        ])
        assert SpinWheelService(db_session, FixedDraw(0.2)).select_prize(wheel, 1).name == "10% off"
        assert SpinWheelService(db_session, FixedDraw(0.7)).select_prize(wheel, 1).name == "50 points"

    def test_probabilities_normalized_when_over_one(self, db_session):
        wheel = make_wheel(db_session, [
            {**TEN_PERCENT, "probability": Decimal("0.8")},
            {**FIFTY_POINTS, "probability": Decimal("0.8")},
        ])
        assert SpinWheelService(db_session, FixedDraw(0.6)).select_prize(wheel, 1).name == "50 points"

    def test_tier_restricted_prize(self, db_session):
        wheel = make_wheel(db_session, [
            {**FIFTY_POINTS, "tier_restrictions": [3]},
            {**TEN_PERCENT, "probability": Decimal("0.1")},
        ])
        service = SpinWheelService(db_session, FixedDraw(0.05))
        assert service.select_prize(wheel, 2).name == "10% off"
        assert service.select_prize(wheel, 3).name == "50 points"

    def test_tier_probability_boost(self, db_session):
        wheel = make_wheel(
            db_session,
            [{**FIFTY_POINTS, "probability": Decimal("0.3")}, {**TEN_PERCENT, "probability": Decimal("0.1")}],
            tier_probability_boost={"3": 2.0},
        )
        service = SpinWheelService(db_session, FixedDraw(0.35))
        assert service.select_prize(wheel, 1).name == "10% off"
        assert service.select_prize(wheel, 3).name == "50 points"

    def test_exhausted_prize(self, db_session, service, customer, account):
        make_wheel(db_session, [{**TEN_PERCENT, "max_redemptions": 1}])
        service.spin(customer.id)
        with pytest.raises(SpinWheelError, match="No prizes are available"):
            service.spin(customer.id)


# ============== Prizes ==============

class TestPrizes:
    def test_bonus_points_credited(self, db_session, service, customer, account):
        make_wheel(db_session, [FIFTY_POINTS])
        result = service.spin(customer.id)
        db_session.commit()
        assert result.is_redeemed is True
        db_session.refresh(account)
        assert account.current_points == Decimal("350.00")
        entry = db_session.query(LoyaltyPointsHistory).one()
        assert entry.source == "spin_wheel"
        assert entry.transaction_details["spin_result_id"] == result.id

    def test_discount_becomes_credit(self, db_session, service, customer, account, wheel):
        result = service.spin(customer.id)
        db_session.commit()
        db_session.refresh(customer)
        credits = customer.preferences["available_discounts"]
        assert credits[0]["spin_result_id"] == result.id
        assert credits[0]["source"] == "spin_wheel"
        assert result.display_value == "10%"
        assert service.redeemable_prizes(customer.id) == [result]

    def test_prize_expiry_from_conditions(self, db_session, service, customer, account):
        make_wheel(db_session, [{**TEN_PERCENT, "conditions": {"expiration_days": 7}}])
        result = service.spin(customer.id)
        remaining = as_utc(result.expires_at) - utcnow()
        assert timedelta(days=6) < remaining <= timedelta(days=7)

    def test_redeem_against_order(self, db_session, service, customer, account, wheel, order):
        result = service.spin(customer.id)
        redeemed = service.redeem(customer.id, result.id, order.id)
        assert redeemed.is_redeemed is True
        assert redeemed.redeemed_by_order_id == order.id
        with pytest.raises(SpinWheelError, match="cannot be redeemed"):
            service.redeem(customer.id, result.id)

    def test_redeem_rejects_foreign_order(self, db_session, service, customer, account, wheel, branch,
                                          order_factory):
        grace = Customer(first_name="Grace", last_name="Hopper", email="grace@example.com")
        db_session.add(grace)
        db_session.commit()
        foreign = order_factory(grace, branch, number="ORD-TEST-000077")
        result = service.spin(customer.id)
        with pytest.raises(SpinWheelError, match="does not belong"):
            service.redeem(customer.id, result.id, foreign.id)

    def test_expired_prize_not_redeemable(self, db_session, service, customer, account, wheel):
        result = service.spin(customer.id)
        result.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()
        assert service.redeemable_prizes(customer.id) == []

    def test_unknown_prize(self, service, customer):
        with pytest.raises(SpinWheelNotFound, match="Prize not found"):
            service.redeem(customer.id, 999)


# ============== Endpoints ==============

class TestSpinWheelEndpoints:
    def test_configuration(self, client, customer_headers, wheel):
        response = client.get("/api/spin-wheel/configuration", headers=customer_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Daily Wheel"
        assert data["prizes"][0]["display_value"] == "10%"

    def test_configuration_without_wheel(self, client, customer_headers):
        response = client.get("/api/spin-wheel/configuration", headers=customer_headers)
        assert response.status_code == 404
        assert response.json()["message"] == "No active spin wheel available"

    def test_status(self, client, customer_headers, customer, account, wheel):
        response = client.get("/api/spin-wheel/status", headers=customer_headers)
        assert response.status_code == 200
        assert response.json()["customer_id"] == customer.id
        assert response.json()["free_spins_remaining"] == 2

    def test_spin(self, client, customer_headers, account, wheel):
        response = client.post("/api/spin-wheel/spin", json={}, headers=customer_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["result"]["prize_type"] == "discount"
        assert data["result"]["spin_type"] == "free"
        assert data["status"]["free_spins_remaining"] == 1

    def test_spin_without_spins(self, client, customer_headers, customer, wheel):
        response = client.post("/api/spin-wheel/spin", json={}, headers=customer_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Cannot spin the wheel at this time"

    def test_buy_spins_insufficient_points(self, client, customer_headers, account, wheel):
        response = client.post("/api/spin-wheel/buy-spins", json={"quantity": 5}, headers=customer_headers)
        assert response.status_code == 422

    def test_buy_spins(self, client, customer_headers, account, wheel):
        response = client.post("/api/spin-wheel/buy-spins", json={"quantity": 1}, headers=customer_headers)
        assert response.status_code == 200
        assert response.json()["paid_spins_remaining"] == 1
        assert response.json()["current_points"] == 200.0

    def test_redeem_prize(self, client, customer_headers, account, wheel):
        spun = client.post("/api/spin-wheel/spin", json={}, headers=customer_headers).json()
        prizes = client.get("/api/spin-wheel/redeemable-prizes", headers=customer_headers).json()
        assert prizes["total"] == 1
        response = client.post(
            "/api/spin-wheel/redeem-prize", json={"spin_result_id": spun["result"]["id"]}, headers=customer_headers,
        )
        assert response.status_code == 200
        assert response.json()["is_redeemed"] is True

    def test_redeem_missing_prize(self, client, customer_headers, customer, wheel):
        response = client.post("/api/spin-wheel/redeem-prize", json={"spin_result_id": 999}, headers=customer_headers)
        assert response.status_code == 404

    def test_staff_acts_for_customer(self, client, support_headers, customer, account, wheel):
        response = client.get("/api/spin-wheel/status", params={"customer_id": customer.id}, headers=support_headers)
        assert response.status_code == 200

    def test_customer_cannot_act_for_another(self, client, db_session, customer_headers, customer, wheel):
        grace = Customer(first_name="Grace", last_name="Hopper", email="grace@example.com")
        db_session.add(grace)
        db_session.commit()
        response = client.get("/api/spin-wheel/status", params={"customer_id": grace.id}, headers=customer_headers)
        assert response.status_code == 403
