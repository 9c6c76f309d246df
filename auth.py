"""
=============================================================================
AUTH.PY — Verificación de tokens
=============================================================================
El login y el registro los hace el proveedor de identidad (fuera de este
servicio). Aquí solo VERIFICAMOS los JWT que llegan:

  - Tokens de usuario      → sub = id del perfil, role = su rol
  - Token del dispatcher   → role = "service_role" (los webhooks de la BD)

Todos van firmados con la misma SECRET_KEY (HS256).
"""

import os
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from database import get_db
from models import Profile

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

SECRET_KEY = os.getenv("SECRET_KEY", "wastechain-dev-secret-key-cambiar-en-produccion")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 30
SERVICE_ROLE = "service_role"


# ─────────────────────────────────────────────────────────────────────────────
# TOKENS JWT
# ─────────────────────────────────────────────────────────────────────────────

def create_access_token(user_id: Optional[int], role: str, expires_days: int = ACCESS_TOKEN_EXPIRE_DAYS) -> str:
    """
    Crea un token JWT. Lo usan los tests y las herramientas internas;
    en producción los emite el proveedor de identidad.
    """
    expire = datetime.utcnow() + timedelta(days=expires_days)
    to_encode = {"role": role, "exp": expire}
    if user_id is not None:
        to_encode["sub"] = str(user_id)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_service_token() -> str:
    """Token con el que el dispatcher de eventos llama a los webhooks"""
    return create_access_token(None, SERVICE_ROLE)


def decode_token(token: str) -> Optional[dict]:
    """Decodifica un JWT. Si es inválido o ha caducado, devuelve None."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIAS
# ─────────────────────────────────────────────────────────────────────────────

security = HTTPBearer()


def _payload_or_401(credentials: HTTPAuthorizationCredentials) -> dict:
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return payload


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Profile:
    """Extrae el perfil del token JWT (sub = id del perfil)"""
    payload = _payload_or_401(credentials)

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject"
        )

    user = db.query(Profile).filter(Profile.id == int(user_id)).first()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


def require_roles(*roles: str):
    """
    Restringe un endpoint a ciertos roles:
      @app.post("/admin/...")
      def x(user: Profile = Depends(require_roles("admin"))):
    """
    def dependency(user: Profile = Depends(get_current_user)) -> Profile:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}"
            )
        return user
    return dependency


def verify_service_role(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Solo el dispatcher de eventos (service_role) puede llamar a los webhooks"""
    payload = _payload_or_401(credentials)
    if payload.get("role") != SERVICE_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Webhooks require the service role"
        )
    return payload
