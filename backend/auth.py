from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

from core.billing_errors import PermissionDeniedError

# JWT Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-billing-secret-key-2024")
ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = 30

ADMIN_ROLE = "Admin"
READ_ONLY_ROLES = ("Viewer",)

# HTTP Bearer for token extraction
security = HTTPBearer()


@dataclass(frozen=True)
class RequestContext:
    """
    Credentials of the caller, built once per request from the bearer token
    and passed explicitly into every service call.
    """
    user_id: str
    role: str = "Operator"
    company_ids: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def can_access(self, company_id: str) -> bool:
        return self.is_admin or company_id in self.company_ids

    def require_company(self, company_id: str, write: bool = False) -> None:
        if not self.can_access(company_id):
            raise PermissionDeniedError(
                f"No access to company {company_id}",
                {"company_id": company_id}
            )
        if write:
            self.require_writer()

    def require_writer(self) -> None:
        if self.role in READ_ONLY_ROLES:
            raise PermissionDeniedError(
                f"Role '{self.role}' cannot modify billing data",
                {"role": self.role}
            )

    def company_filter(self, company_id: Optional[str] = None) -> dict:
        """Mongo filter restricting a listing to companies the caller can see."""
        if company_id:
            self.require_company(company_id)
            return {"company_id": company_id}
        if self.is_admin:
            return {}
        return {"company_id": {"$in": list(self.company_ids)}}


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token.

    Tokens are normally issued by the identity service; this exists for
    internal callers and tests.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired. Please refresh."
        )
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return payload


def context_from_payload(payload: dict) -> RequestContext:
    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )
    return RequestContext(
        user_id=str(user_id),
        role=payload.get("role", "Operator"),
        company_ids=[str(c) for c in payload.get("company_ids", [])]
    )


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> RequestContext:
    """Extract and validate current user from JWT token"""
    payload = decode_access_token(credentials.credentials)
    return context_from_payload(payload)
