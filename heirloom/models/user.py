from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None
    role: str = "user"
    stripe_customer_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
