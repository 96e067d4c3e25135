from typing import Dict, Optional

from pydantic import BaseModel


class AdminStatusResponse(BaseModel):
    store: str
    keys: Optional[int] = None
    daily_limit: int
    action_limits: Dict[str, int] = {}
    time: str


class VipUpdateResponse(BaseModel):
    user_id: str
    vip: bool
