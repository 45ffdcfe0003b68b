"""
User model definitions.
The identity provider owns users; the client only sees their id.
"""

from typing import Optional
from pydantic import BaseModel


class User(BaseModel):
    """The signed-in user as reported by the identity provider."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
