from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, constr
from typing import List
from assessgrade.core.auth import ROLES, create_token

router = APIRouter()

class MockLogin(BaseModel):
    user_id: constr(min_length=1)
    roles: List[str]

@router.post("/mock-login")
def mock_login(payload: MockLogin):
    unknown = set(payload.roles) - set(ROLES)
    if unknown: raise HTTPException(400, f"Unknown roles: {', '.join(sorted(unknown))}")
    token = create_token(payload.user_id, payload.roles)
    return {"access_token": token, "token_type": "bearer", "roles": payload.roles}
