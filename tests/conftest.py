"""Shared fixtures for all tests."""

from datetime import datetime, timedelta, timezone

import pytest

from backend.core.database import (
    Booking,
    Business,
    Category,
    Order,
    OrderItem,
    Product,
    Service,
    User,
    get_session,
    init_db,
)


@pytest.fixture
def db():
    """Fresh in-memory database for each test."""
    init_db("sqlite:///:memory:")
    yield get_session


@pytest.fixture
def catalog(db):
    """Two crew members, a distributor, an admin, and a small catalog.

    U1 has two pending orders and one delivered order, plus one confirmed booking.
    """
    now = datetime.now(timezone.utc)
    with get_session() as s:
        s.add_all([
            User(id="U1", email="crew1@example.com", first_name="Ana", last_name="Reyes", role="user"),
            User(id="U2", email="crew2@example.com", first_name="Tom", last_name="Hale", role="user"),
            User(id="D1", email="seller@example.com", first_name="Ola", last_name="Berg", role="distributor"),
            User(id="D2", email="maker@example.com", first_name="Kai", last_name="Lund", role="manufacturer"),
            User(id="A1", email="admin@example.com", first_name="Ad", last_name="Min", role="admin"),
        ])
        s.add_all([
            Business(id="B1", user_id="D1", business_name="Harbour Chandlery", business_type="distributor",
                     phone="+33 4 93 00 00 00", email="sales@harbour.example", website="https://harbour.example",
                     address={"city": "Antibes", "country": "FR"}, ratings={"average": 4.7, "count": 31}),
            Business(id="B2", user_id="D2", business_name="Nordic Lines", business_type="manufacturer",
                     email="hello@nordic.example", address={"city": "Bergen", "country": "NO"}),
        ])
        s.add_all([
            Category(id="C1", name="Deck & Rigging", type="product"),
            Category(id="C2", name="Cleaning", type="product"),
            Category(id="C3", name="Maintenance", type="service"),
        ])
        s.add_all([
            Product(id="P1", user_id="D1", business_id="B1", category_id="C1", name="Dyneema Mooring Rope 16mm",
                    description="Low-stretch mooring line", sku="DY-16", price=189.0, quantity=40,
                    hs_code="5607.50", warehouse_address={"city": "Antibes", "country": "FR"},
                    weight=4.2, height=0.3, length=0.4, width=0.4, created_at=now - timedelta(days=3)),
            Product(id="P2", user_id="D2", business_id="B2", category_id="C1", name="Fender Line",
                    description="Braided polyester ROPE for fenders", price=24.5, quantity=200,
                    hs_code="5607.50", warehouse_address={"city": "Bergen", "country": "NO"},
                    created_at=now - timedelta(days=2)),
            Product(id="P3", user_id="D1", business_id="B1", category_id="C2", name="Teak Cleaner",
                    description="Two-part teak deck cleaner", price=39.0, quantity=12,
                    hs_code="3402.90", created_at=now - timedelta(days=1)),
        ])
        s.add_all([
            Service(id="S1", business_id="B1", category_id="C3", name="Rigging Inspection",
                    description="Full standing rigging survey", price=650.0),
            Service(id="S2", business_id="B2", category_id="C3", name="Hull Detailing",
                    description="Dockside wash, polish and wax", price=1200.0),
        ])
        s.add_all([
            Order(id="O1", user_id="U1", business_id="B1", status="pending", total=189.0,
                  created_at=now - timedelta(days=5)),
            Order(id="O2", user_id="U1", business_id="B2", status="pending", total=49.0,
                  created_at=now - timedelta(days=4)),
            Order(id="O3", user_id="U1", business_id="B1", status="delivered", total=39.0,
                  created_at=now - timedelta(days=10)),
            Order(id="O4", user_id="U2", business_id="B1", status="pending", total=39.0,
                  created_at=now - timedelta(days=1)),
        ])
        s.add_all([
            OrderItem(order_id="O1", product_id="P1", business_id="B1", quantity=1, price_per_item=189.0),
            OrderItem(order_id="O2", product_id="P2", business_id="B2", quantity=2, price_per_item=24.5),
            OrderItem(order_id="O3", product_id="P3", business_id="B1", quantity=1, price_per_item=39.0),
            OrderItem(order_id="O4", product_id="P3", business_id="B1", quantity=1, price_per_item=39.0),
        ])
        s.add(Booking(id="K1", user_id="U1", business_id="B1", service_id="S1", status="confirmed",
                      payment_status="paid", booking_date=now + timedelta(days=7), total_amount=650.0))
        s.commit()
    yield get_session
