from typing import Any
from uuid import UUID

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    detail: Any
    code: str | None = None
    account_id: UUID | None = None
    state: str | None = None
