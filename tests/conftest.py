"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-foodhub-suite-0123456789")
os.environ.setdefault("DEBUG", "true")

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from foodhub.core.cache import redis_cache
from foodhub.core.rbac import UserRole
from foodhub.core.security import get_password_hash, create_access_token
from foodhub.db.base import Base
from foodhub.db.session import get_db
from foodhub.main import app
# Import all models to ensure they're registered with Base.metadata
from foodhub.models import *
from foodhub.models.customer import Customer, CustomerAddress
from foodhub.models.delivery import Driver
from foodhub.models.menu import MenuItem
from foodhub.models.order import Order, OrderStatus, OrderType, PaymentMethod
from foodhub.models.restaurant import Restaurant, RestaurantBranch
from foodhub.models.user import User

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(autouse=True)
def clear_cache():
    """Rate-limit windows, blocked IPs and blacklisted tokens never leak between tests."""
    redis_cache.clear()
    yield
    redis_cache.clear()


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiters during tests to avoid flaky failures
    from foodhub.core.rate_limit import advanced_limiter, limiter as global_limiter
    global_limiter.enabled = False
    advanced_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    advanced_limiter.enabled = True
    app.dependency_overrides.clear()


# ============== Tenancy ==============

@pytest.fixture
def restaurant(db_session: Session) -> Restaurant:
    restaurant = Restaurant(name="Harbor Grill", slug="harbor-grill", cuisine_type="seafood")
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def other_restaurant(db_session: Session) -> Restaurant:
    restaurant = Restaurant(name="Hilltop Noodles", slug="hilltop-noodles", cuisine_type="asian")
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def branch(db_session: Session, restaurant: Restaurant) -> RestaurantBranch:
    branch = RestaurantBranch(
        restaurant_id=restaurant.id,
        name="Harbor Grill Downtown",
        slug="downtown",
        address="1 Pier Road",
        city="Springfield",
        latitude=40.7128,
        longitude=-74.0060,
        delivery_fee=Decimal("3.50"),
    )
    db_session.add(branch)
    db_session.commit()
    db_session.refresh(branch)
    return branch


# ============== Users ==============

def make_user(db: Session, email: str, role: UserRole, restaurant=None, branch=None,
              permissions=None, status: str = "active", password: str = "testpass123") -> User:
    user = User(
        email=email,
        name=email.split("@")[0].title(),
        password_hash=get_password_hash(password),
        role=role,
        restaurant_id=restaurant.id if restaurant is not None else None,
        restaurant_branch_id=branch.id if branch is not None else None,
        permissions=permissions or [],
        status=status,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def headers_for(user: User) -> dict:
    token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def super_admin(db_session: Session) -> User:
    return make_user(db_session, "admin@example.com", UserRole.SUPER_ADMIN)


@pytest.fixture
def owner(db_session: Session, restaurant, branch) -> User:
    return make_user(db_session, "owner@example.com", UserRole.RESTAURANT_OWNER, restaurant, branch)


@pytest.fixture
def manager(db_session: Session, restaurant, branch) -> User:
    return make_user(db_session, "manager@example.com", UserRole.BRANCH_MANAGER, restaurant, branch)


@pytest.fixture
def cashier(db_session: Session, restaurant, branch) -> User:
    return make_user(db_session, "cashier@example.com", UserRole.CASHIER, restaurant, branch)


@pytest.fixture
def delivery_manager(db_session: Session, restaurant, branch) -> User:
    return make_user(db_session, "dispatch@example.com", UserRole.DELIVERY_MANAGER, restaurant, branch)


@pytest.fixture
def support_agent(db_session: Session, restaurant, branch) -> User:
    return make_user(db_session, "support@example.com", UserRole.CUSTOMER_SERVICE, restaurant, branch)


@pytest.fixture
def admin_headers(super_admin: User) -> dict:
    return headers_for(super_admin)


@pytest.fixture
def owner_headers(owner: User) -> dict:
    return headers_for(owner)


@pytest.fixture
def manager_headers(manager: User) -> dict:
    return headers_for(manager)


@pytest.fixture
def cashier_headers(cashier: User) -> dict:
    return headers_for(cashier)


@pytest.fixture
def dispatch_headers(delivery_manager: User) -> dict:
    return headers_for(delivery_manager)


@pytest.fixture
def support_headers(support_agent: User) -> dict:
    return headers_for(support_agent)


# ============== Customers, menu, drivers ==============

@pytest.fixture
def customer(db_session: Session) -> Customer:
    customer = Customer(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        phone="+15551234567",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture
def customer_user(db_session: Session, customer: Customer) -> User:
    """The app login belonging to ``customer`` (same email)."""
    return make_user(db_session, customer.email, UserRole.CUSTOMER)


@pytest.fixture
def customer_headers(customer_user: User) -> dict:
    return headers_for(customer_user)


@pytest.fixture
def address(db_session: Session, customer: Customer) -> CustomerAddress:
    address = CustomerAddress(
        customer_id=customer.id,
        label="home",
        address="42 Elm Street",
        city="Springfield",
        latitude=40.7306,
        longitude=-73.9866,
        is_default=True,
    )
    db_session.add(address)
    db_session.commit()
    db_session.refresh(address)
    return address


@pytest.fixture
def menu_item(db_session: Session, restaurant: Restaurant) -> MenuItem:
    item = MenuItem(
        restaurant_id=restaurant.id,
        name="Fish Tacos",
        slug="fish-tacos",
        price=Decimal("12.50"),
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


def make_driver(db: Session, email: str, latitude: float = 40.7130, longitude: float = -74.0050,
                **overrides) -> Driver:
    fields = dict(
        first_name="Sam",
        last_name="Rider",
        email=email,
        phone="+15550001111",
        vehicle_type="car",
        status="online",
        is_online=True,
        is_available=True,
        current_latitude=latitude,
        current_longitude=longitude,
        rating=4.8,
    )
    fields.update(overrides)
    driver = Driver(**fields)
    db.add(driver)
    db.commit()
    db.refresh(driver)
    return driver


@pytest.fixture
def driver(db_session: Session) -> Driver:
    return make_driver(db_session, "sam.rider@example.com")


def make_order(db: Session, customer, branch, address=None, number: str = "ORD-TEST-000001",
               status: OrderStatus = OrderStatus.CONFIRMED, **overrides) -> Order:
    fields = dict(
        order_number=number,
        customer_id=customer.id,
        restaurant_id=branch.restaurant_id,
        restaurant_branch_id=branch.id,
        customer_address_id=address.id if address is not None else None,
        status=status,
        type=OrderType.DELIVERY,
        payment_method=PaymentMethod.CARD,
        subtotal=Decimal("25.00"),
        delivery_fee=Decimal("3.50"),
        total_amount=Decimal("28.50"),
        delivery_address="42 Elm Street",
        estimated_preparation_time=20,
    )
    fields.update(overrides)
    order = Order(**fields)
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


@pytest.fixture
def order(db_session: Session, customer, branch, address) -> Order:
    return make_order(db_session, customer, branch, address)


# ============== Factories ==============

@pytest.fixture
def auth_headers():
    """``auth_headers(user)`` -> bearer headers for that user."""
    return headers_for


@pytest.fixture
def user_factory(db_session: Session):
    def factory(email, role, restaurant=None, branch=None, **kwargs):
        return make_user(db_session, email, role, restaurant, branch, **kwargs)
    return factory


@pytest.fixture
def driver_factory(db_session: Session):
    def factory(email, **kwargs):
        return make_driver(db_session, email, **kwargs)
    return factory


@pytest.fixture
def order_factory(db_session: Session):
    def factory(customer, branch, address=None, **kwargs):
        return make_order(db_session, customer, branch, address, **kwargs)
    return factory
