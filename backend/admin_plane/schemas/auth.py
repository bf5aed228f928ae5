"""
Authentication schemas for the admin control plane.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field


class UserLogin(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]
