from datetime import datetime

from pydantic import BaseModel


class ApiMessage(BaseModel):
    success: bool = False
    message: str
    timestamp: datetime
