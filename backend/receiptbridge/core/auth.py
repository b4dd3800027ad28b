from dataclasses import dataclass
from typing import Optional
from jose import JWTError, jwt
from fastapi import HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer

from receiptbridge.core.config import SECRET_KEY, ALGORITHM


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")

ORG_ADMIN = "org:admin"
ORG_BOOKKEEPER = "org:bookkeeper"


@dataclass(frozen=True)
class Tenant:
    user_id: str
    organization_id: Optional[str] = None
    org_role: Optional[str] = None

    @property
    def scope_key(self) -> str:
        # org-level connection when the user belongs to an organization
        if self.organization_id:
            return f"org:{self.organization_id}"
        return f"user:{self.user_id}"


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return {"ok": False, "error": "Invalid token"}

    user_id = payload.get("sub")
    if user_id is None:
        return {"ok": False, "error": "Invalid token payload"}
    return {
        "ok": True,
        "user_id": str(user_id),
        "org_id": payload.get("org_id"),
        "org_role": payload.get("org_role"),
    }


def tenant_from_token(token: str) -> Tenant:
    decoded = decode_token(token)
    if not decoded.get("ok"):
        raise HTTPException(status_code=401, detail=decoded.get("error"))
    org_id = decoded.get("org_id")
    return Tenant(
        user_id=decoded["user_id"],
        organization_id=str(org_id) if org_id else None,
        org_role=decoded.get("org_role"),
    )


async def get_current_tenant(token: str = Depends(oauth2_scheme)) -> Tenant:
    return tenant_from_token(token)


def ensure_org_role(tenant: Tenant, *roles: str) -> Tenant:
    # personal accounts own their connection outright
    if tenant.organization_id and tenant.org_role not in roles:
        raise HTTPException(status_code=403, detail="Insufficient organization role")
    return tenant


def require_org_role(*roles: str):
    async def checker(tenant: Tenant = Depends(get_current_tenant)) -> Tenant:
        return ensure_org_role(tenant, *roles)

    return checker
