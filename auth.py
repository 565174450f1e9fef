import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
import database
from errors import Forbidden, Unauthorized

log = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ROLES = ("user", "admin", "superadmin")

# action -> roles allowed to perform it
PERMISSIONS = {
    "catalog:write": {"admin", "superadmin"},
    "review:moderate": {"admin", "superadmin"},
    "cart:admin": {"admin", "superadmin"},
    "cart:clean": {"admin", "superadmin"},
    "order:read_any": {"admin", "superadmin"},
    "order:update_status": {"admin", "superadmin"},
    "payment:refund": {"admin", "superadmin"},
    "payment:read_any": {"admin", "superadmin"},
    "payment:stats": {"admin", "superadmin"},
    "user:manage": {"admin", "superadmin"},
    "admin:create": {"superadmin"},
}


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def can(actor: Optional[dict], action: str, owner_id: Optional[str] = None) -> bool:
    """Whether `actor` may perform `action`, optionally on a resource owned by `owner_id`."""
    if not actor:
        return False
    if owner_id is not None and str(actor.get("_id")) == str(owner_id):
        return True
    role = actor.get("role", "user")
    return role in ROLES and role in PERMISSIONS.get(action, set())


def get_current_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)):
    token = token or request.cookies.get("accessToken")
    if not token:
        raise Unauthorized("Authentication required")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise Unauthorized("Could not validate credentials")
    except JWTError:
        raise Unauthorized("Could not validate credentials")
    user = database.collection("user").find_one({"email": email})
    if not user:
        raise Unauthorized("Could not validate credentials")
    return user


def require(action: str):
    """Route dependency that only lets through actors allowed to perform `action`."""
    def checker(current_user=Depends(get_current_user)):
        if not can(current_user, action):
            log.info("Denied %s to %s (%s)", action, current_user.get("email"), current_user.get("role"))
            raise Forbidden("Admin access required" if action != "admin:create" else "Super admin access required")
        return current_user
    return checker


def ensure_super_admin():
    """Create the superadmin named by SUPER_ADMIN_EMAIL if it does not exist yet."""
    if not config.SUPER_ADMIN_EMAIL or not config.SUPER_ADMIN_PASSWORD:
        return None
    users = database.collection("user")
    email = config.SUPER_ADMIN_EMAIL.lower()
    if users.find_one({"email": email}):
        return None
    log.info("Creating super admin %s", email)
    return database.create_document("user", {
        "name": "Super Admin",
        "email": email,
        "password_hash": get_password_hash(config.SUPER_ADMIN_PASSWORD),
        "role": "superadmin",
        "photo": None,
    })
