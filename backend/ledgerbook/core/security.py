"""
Security Module - Bearer token scope resolution

Tokens are issued by the surrounding identity service; this module only
creates them for tooling/tests and decodes them into a company/branch scope.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from ledgerbook.core.config import settings
from ledgerbook.core.database import get_db

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


class CurrentScope:
    """Tenant scope of the authenticated caller"""

    def __init__(self, username: str, company_id: int, branch_id: int):
        self.username = username
        self.company_id = company_id
        self.branch_id = branch_id

    def __repr__(self):
        return f"<CurrentScope {self.username} company={self.company_id} branch={self.branch_id}>"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


async def get_current_scope(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> CurrentScope:
    """
    Dependency resolving the caller's company and branch from the JWT.
    Supports both Authorization header and cookies.
    """
    from ledgerbook.models import Branch

    token = None
    if credentials:
        token = credentials.credentials
    if not token:
        token = request.cookies.get("access_token")

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    username = payload.get("sub")
    company_id = payload.get("company_id")
    branch_id = payload.get("branch_id")
    if username is None or company_id is None or branch_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    branch = db.query(Branch).filter(
        Branch.id == int(branch_id),
        Branch.company_id == int(company_id)
    ).first()
    if not branch:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Branch does not belong to this company"
        )

    return CurrentScope(username=username, company_id=int(company_id), branch_id=int(branch_id))
