"""Prompt and escalation templates for the Yacht Crew Center assistant."""

from datetime import datetime, timezone
from html import escape

PERSONA = (
    "You are a helpful customer service agent for Yacht Crew Center, a marketplace "
    "connecting yacht crews with product suppliers and service providers. "
    "Use the provided context to answer questions accurately. When the user asks about "
    "their orders, bookings, or the product and service catalog, use the available tools "
    "instead of guessing. If you cannot find relevant information, indicate that you "
    "need to escalate."
)

ESCALATION_SUBJECT = "AI Chat Escalation - Unable to Answer Query"


def build_system_prompt(context: str) -> str:
    """Retrieved knowledge-base context followed by the fixed persona."""
    return f"{context}\n\n{PERSONA}" if context else PERSONA


def escalation_message(support_email: str) -> str:
    return (
        "I couldn't find specific information about that in our knowledge base. "
        f"I've escalated your query to our support team at {support_email}, "
        "and they'll get back to you shortly!"
    )


def escalation_email(user_message: str, user_id: str | None) -> str:
    """HTML body of the support notification for an unanswered query."""
    return (
        "<h2>AI Chat Escalation</h2>"
        f"<p><strong>User ID:</strong> {escape(user_id or 'Anonymous')}</p>"
        "<p><strong>User Query:</strong></p>"
        f"<p>{escape(user_message)}</p>"
        "<p><strong>Reason:</strong> No relevant context found in knowledge base</p>"
        f"<p><strong>Time:</strong> {datetime.now(timezone.utc).isoformat()}</p>"
    )
