"""Tools the assistant can call for authenticated users.

The set is closed: ToolName lists every tool, each with a pydantic argument
model and an OpenAI-format declaration in TOOL_SPECS. dispatch() never raises;
failures come back as ToolOutcome errors so the model always receives a
well-formed JSON payload.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from backend.core.catalog import fetch_bookings, fetch_orders, fetch_products, fetch_services
from backend.core.database import get_session

logger = structlog.get_logger(__name__)

ORDER_STATUSES = ["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
BOOKING_STATUSES = ["pending", "confirmed", "cancelled", "completed"]


class ToolName(str, Enum):
    GET_ORDERS = "get_orders"
    GET_BOOKINGS = "get_bookings"
    GET_PRODUCTS = "get_products"
    GET_SERVICES = "get_services"


class OrdersArgs(BaseModel):
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"] | None = None
    limit: int = Field(10, ge=1, le=100)


class BookingsArgs(BaseModel):
    status: Literal["pending", "confirmed", "cancelled", "completed"] | None = None
    limit: int = Field(10, ge=1, le=100)


class ProductsArgs(BaseModel):
    productName: str | None = None
    limit: int = Field(20, ge=1, le=100)


class ServicesArgs(BaseModel):
    serviceName: str | None = None
    limit: int = Field(20, ge=1, le=100)


def _function(name: ToolName, description: str, properties: dict) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name.value,
            "description": description,
            "parameters": {"type": "object", "properties": properties},
        },
    }


TOOL_SPECS = [
    _function(ToolName.GET_ORDERS, "Fetch the user's orders with optional status filtering", {
        "status": {"type": "string", "enum": ORDER_STATUSES},
        "limit": {"type": "number", "default": 10},
    }),
    _function(ToolName.GET_BOOKINGS, "Fetch the user's service bookings with optional status filtering", {
        "status": {"type": "string", "enum": BOOKING_STATUSES},
        "limit": {"type": "number", "default": 10},
    }),
    _function(ToolName.GET_PRODUCTS, "Search products by name or get random products", {
        "productName": {"type": "string", "description": "Product name to search for"},
        "limit": {"type": "number", "default": 20},
    }),
    _function(ToolName.GET_SERVICES, "Search services by name or get random services", {
        "serviceName": {"type": "string", "description": "Service name or type to search for"},
        "limit": {"type": "number", "default": 20},
    }),
]


@dataclass
class ToolOutcome:
    """Result of one tool invocation: a value or an error reason, never both."""
    value: dict | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: dict) -> "ToolOutcome":
        return cls(value=value)

    @classmethod
    def failure(cls, reason: str) -> "ToolOutcome":
        return cls(error=reason)

    def payload(self) -> str:
        """JSON handed back to the model as the tool message content."""
        if self.ok:
            return json.dumps(self.value, default=str)
        return json.dumps({"error": self.error})


class ToolRegistry:
    """Runs tool calls against the marketplace database on behalf of one caller."""

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def specs(self) -> list[dict]:
        return TOOL_SPECS

    def dispatch(self, name: str, args: dict | None, user_id: str, role: str = "user") -> ToolOutcome:
        """Validate args and run the named tool for the given user.

        Args:
            name: Tool name as requested by the model.
            args: Parsed JSON arguments from the model.
            user_id: Authenticated caller the query is scoped to.
            role: Caller's role; sellers only see their own products.

        Returns:
            ToolOutcome with the query result, or an error reason.
        """
        try:
            tool = ToolName(name)
        except ValueError:
            logger.warning("tool.unknown", name=name)
            return ToolOutcome.failure(f"Unknown tool: {name}")

        try:
            with self._session_factory() as db:
                if tool is ToolName.GET_ORDERS:
                    a = OrdersArgs.model_validate(args or {})
                    result = fetch_orders(db, user_id, a.status, a.limit)
                elif tool is ToolName.GET_BOOKINGS:
                    a = BookingsArgs.model_validate(args or {})
                    result = fetch_bookings(db, user_id, a.status, a.limit)
                elif tool is ToolName.GET_PRODUCTS:
                    a = ProductsArgs.model_validate(args or {})
                    result = fetch_products(db, user_id, role, a.productName, a.limit)
                elif tool is ToolName.GET_SERVICES:
                    a = ServicesArgs.model_validate(args or {})
                    result = fetch_services(db, a.serviceName, a.limit)
                else:
                    raise AssertionError(f"unhandled tool {tool}")
        except ValidationError as e:
            logger.warning("tool.invalid_args", tool=tool.value, errors=e.error_count())
            return ToolOutcome.failure(f"Invalid arguments for {tool.value}: {e.errors(include_url=False)}")
        except Exception as e:
            logger.error("tool.failed", tool=tool.value, error=str(e))
            return ToolOutcome.failure(f"{tool.value} failed: {e}")

        logger.info("tool.ok", tool=tool.value, user_id=user_id)
        return ToolOutcome.success(result)
