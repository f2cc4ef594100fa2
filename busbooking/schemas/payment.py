from pydantic import BaseModel
from typing import Optional


class WebhookAck(BaseModel):
    received: bool
    booking_id: Optional[str] = None
