"""SQLAlchemy engine, session factory and the marketplace tables read by the chat tools.

Chat history and the email outbox declare their tables on the same Base
(see history.py and notifications.py), so init_db() creates everything.
"""

import os
import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger(__name__)

Base = declarative_base()

SELLER_ROLES = {"distributor", "manufacturer"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, unique=True, nullable=False)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="user")  # admin, user, distributor, manufacturer
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class Business(Base):
    __tablename__ = "businesses"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    business_name = Column(String, nullable=False)
    business_type = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    address = Column(JSON, nullable=True)
    website = Column(String, nullable=True)
    ratings = Column(JSON, nullable=True)


class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    type = Column(String, nullable=True)  # "product" or "service"


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sku = Column(String, nullable=True)
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    image_urls = Column(JSON, nullable=True)
    hs_code = Column(String, nullable=True)
    warehouse_address = Column(JSON, nullable=True)
    weight = Column(Float, nullable=True)
    height = Column(Float, nullable=True)
    length = Column(Float, nullable=True)
    width = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    business = relationship("Business")
    category = relationship("Category")


class Service(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True, default=_new_id)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    business = relationship("Business")
    category = relationship("Category")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    status = Column(String, nullable=False, default="pending")
    total = Column(Float, nullable=False, default=0.0)
    tracking_number = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_item = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="pending")

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    business = relationship("Business")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    status = Column(String, nullable=False, default="pending")
    payment_status = Column(String, nullable=False, default="pending")
    booking_date = Column(DateTime, nullable=False)
    total_amount = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    service = relationship("Service")
    business = relationship("Business")


_engine = None
_SessionLocal = None


def init_db(database_url: str | None = None) -> None:
    """Create engine + tables. Call once at startup.

    Args:
        database_url: SQLAlchemy connection string. Defaults to DATABASE_URL env var.
    """
    global _engine, _SessionLocal

    # Register the chat and outbox tables on Base before create_all
    import backend.core.history  # noqa: F401
    import backend.core.notifications  # noqa: F401

    url = database_url or os.environ.get("DATABASE_URL", "sqlite:///data/ycc.sqlite")
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every thread sees its own empty database
        _engine = create_engine(
            url, echo=False, poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        _engine = create_engine(url, echo=False)
    _SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False)

    Base.metadata.create_all(_engine)
    logger.info("db.initialized", url=url.split("///")[0] + "///***")


def get_engine():
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session() -> Session:
    """Get a new database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_user(user_id: str) -> User | None:
    with get_session() as session:
        return session.get(User, user_id)
