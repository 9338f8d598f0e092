from __future__ import annotations

from pydantic import BaseModel


class PurgeExpiredResponse(BaseModel):
    purged: int
