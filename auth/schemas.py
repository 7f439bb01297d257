"""
Pydantic schemas for the user-facing endpoints.
"""

from pydantic import BaseModel


class UserURL(BaseModel):
    """One entry of GET /api/user/urls."""
    short_url: str
    original_url: str
