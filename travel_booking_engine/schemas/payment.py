"""
Pydantic schemas for the payment webhook endpoint.
"""

from typing import Optional

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment gateway."""

    received: bool = True
    event_id: str
    event_type: str
    outcome: str
    duplicate: bool = False
    detail: Optional[str] = None
