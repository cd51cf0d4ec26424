"""Read-only marketplace queries behind the assistant's tools.

Every function takes an open session and returns a JSON-serializable dict.
Orders and bookings are always scoped to the caller; products are scoped to
the caller only when the caller sells them.
"""

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from backend.core.database import (
    SELLER_ROLES,
    Booking,
    Business,
    Order,
    OrderItem,
    Product,
    Service,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _like(term: str) -> str:
    """Substring LIKE pattern with the wildcards in term escaped."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _business_info(business: Business | None, *, with_ratings: bool = False) -> dict | None:
    if business is None:
        return None
    info = {
        "id": business.id,
        "businessName": business.business_name,
        "businessType": business.business_type,
        "phone": business.phone,
        "email": business.email,
        "address": business.address,
        "website": business.website,
    }
    if with_ratings:
        info["ratings"] = business.ratings
    return info


def fetch_orders(db: Session, user_id: str, status: str | None = None, limit: int = 10) -> dict:
    """Caller's orders, newest first."""
    stmt = select(Order).where(Order.user_id == user_id)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = (
        stmt.options(
            selectinload(Order.items).selectinload(OrderItem.product),
            selectinload(Order.items).selectinload(OrderItem.business),
        )
        .order_by(Order.created_at.desc())
        .limit(limit)
    )
    orders = db.execute(stmt).scalars().all()

    return {
        "orders": [
            {
                "id": o.id,
                "status": o.status,
                "total": o.total,
                "trackingNumber": o.tracking_number,
                "items": [
                    {
                        "product": {"name": i.product.name, "price": i.product.price} if i.product else None,
                        "business": {"businessName": i.business.business_name} if i.business else None,
                        "quantity": i.quantity,
                        "pricePerItem": i.price_per_item,
                        "status": i.status,
                    }
                    for i in o.items
                ],
                "createdAt": _iso(o.created_at),
            }
            for o in orders
        ],
        "total": len(orders),
    }


def fetch_bookings(db: Session, user_id: str, status: str | None = None, limit: int = 10) -> dict:
    """Caller's service bookings, newest first."""
    stmt = select(Booking).where(Booking.user_id == user_id)
    if status:
        stmt = stmt.where(Booking.status == status)
    stmt = (
        stmt.options(selectinload(Booking.service), selectinload(Booking.business))
        .order_by(Booking.created_at.desc())
        .limit(limit)
    )
    bookings = db.execute(stmt).scalars().all()

    return {
        "bookings": [
            {
                "id": b.id,
                "status": b.status,
                "paymentStatus": b.payment_status,
                "service": {"name": b.service.name, "price": b.service.price} if b.service else None,
                "business": {"businessName": b.business.business_name} if b.business else None,
                "bookingDate": _iso(b.booking_date),
                "totalAmount": b.total_amount,
                "createdAt": _iso(b.created_at),
            }
            for b in bookings
        ],
        "total": len(bookings),
    }


def fetch_products(
    db: Session,
    user_id: str | None = None,
    role: str | None = None,
    product_name: str | None = None,
    limit: int = 20,
) -> dict:
    """Catalog products, optionally filtered by a name/description substring.

    Sellers (distributors, manufacturers) only see their own listings.
    """
    stmt = select(Product)
    if product_name:
        pattern = _like(product_name)
        stmt = stmt.where(or_(
            Product.name.ilike(pattern, escape="\\"),
            Product.description.ilike(pattern, escape="\\"),
        ))
    if role in SELLER_ROLES:
        stmt = stmt.where(Product.user_id == user_id)
    stmt = (
        stmt.options(selectinload(Product.business), selectinload(Product.category))
        .order_by(Product.created_at.desc())
        .limit(limit)
    )
    products = db.execute(stmt).scalars().all()

    suffix = f' matching "{product_name}"' if product_name else ""
    return {
        "status": True,
        "message": f"Found {len(products)} product(s){suffix}",
        "data": [
            {
                "id": p.id,
                "name": p.name,
                "category": p.category.name if p.category else None,
                "description": p.description,
                "sku": p.sku,
                "price": p.price,
                "productImage": (p.image_urls or [None])[0],
                "hsCode": p.hs_code,
                "countryOfOrigin": (p.warehouse_address or {}).get("country"),
                "dimensions": {"weight": p.weight, "height": p.height, "length": p.length, "width": p.width},
                "supplier": _business_info(p.business),
                "inventory": {"quantity": p.quantity, "warehouseLocation": p.warehouse_address},
                "createdAt": _iso(p.created_at),
                "updatedAt": _iso(p.updated_at),
            }
            for p in products
        ],
        "total": len(products),
        "searchTerm": product_name,
    }


def fetch_services(db: Session, service_name: str | None = None, limit: int = 20) -> dict:
    """Catalog services matching a name/description substring, or a random sample."""
    stmt = select(Service)
    if service_name:
        pattern = _like(service_name)
        stmt = stmt.where(or_(
            Service.name.ilike(pattern, escape="\\"),
            Service.description.ilike(pattern, escape="\\"),
        ))
        stmt = stmt.order_by(Service.name)
    else:
        stmt = stmt.order_by(func.random())
    stmt = stmt.options(selectinload(Service.business), selectinload(Service.category)).limit(limit)
    services = db.execute(stmt).scalars().all()

    suffix = f' matching "{service_name}"' if service_name else ""
    return {
        "status": True,
        "message": f"Found {len(services)} service(s){suffix}",
        "data": [
            {
                "id": s.id,
                "name": s.name,
                "category": s.category.name if s.category else None,
                "description": s.description,
                "price": s.price,
                "vendor": _business_info(s.business, with_ratings=True),
                "createdAt": _iso(s.created_at),
                "updatedAt": _iso(s.updated_at),
            }
            for s in services
        ],
        "total": len(services),
        "searchTerm": service_name,
        "searchType": "search" if service_name else "random",
    }
