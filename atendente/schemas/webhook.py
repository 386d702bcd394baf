from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    status: str
    detail: Optional[str] = None
    bot_response: Optional[str] = None
    parts_sent: Optional[int] = None
