from pydantic import BaseModel, EmailStr, Field
from typing import Optional


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    requests_limit: Optional[int] = Field(None, ge=0)


class UsageSummary(BaseModel):
    user_id: int
    requests_used: int
    requests_limit: int
    remaining: int
