from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class ApiUsageStat(SQLModel, table=True):
    """Number of successful remote calls issued per API type."""

    id: Optional[int] = Field(default=None, primary_key=True)
    api_type: str = Field(index=True, unique=True)
    request_count: int = Field(default=0)
    last_used_at: Optional[datetime] = Field(default=None)
