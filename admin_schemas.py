from pydantic import BaseModel, ConfigDict, EmailStr
from datetime import datetime
from typing import Optional

from models import UserRole


# User Management Schemas
class UserUpdate(BaseModel):
    role: UserRole


class UserResponse(BaseModel):
    id: int
    email: EmailStr
    first_name: str
    last_name: str
    role: UserRole
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)
