from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from clinica_backend.config import JWT_EXPIRE_MINUTES, JWT_SECRET
from clinica_backend.errors import DatosInvalidos, NoAutorizado

JWT_ALG = "HS256"
PASSWORD_MIN_LEN = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def valida_password(password: str | None) -> str:
    if not password or len(password) < PASSWORD_MIN_LEN:
        raise DatosInvalidos(f"La nueva contraseña debe tener al menos {PASSWORD_MIN_LEN} caracteres.")
    return password


def claims_usuario(usuario: Any) -> dict[str, Any]:
    """Claims que el frontend lee del token: rol, médico asociado y clínica."""
    return {
        "userId": usuario.id,
        "username": usuario.username,
        "rol": usuario.rol.value,
        "medico_id": usuario.medico_id,
        "clinica_alias": usuario.clinica_alias,
    }


def create_access_token(subject: str, extra: dict[str, Any] | None = None) -> str:
    """
    subject: id del usuario (como string).
    La expiración sale de JWT_EXPIRE_MINUTES (24h por defecto).
    """
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=JWT_EXPIRE_MINUTES)).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])


def get_subject(token: str) -> str | None:
    try:
        return decode_token(token).get("sub")
    except JWTError:
        return None


def usuario_id_del_token(token: str) -> int:
    # elimina espacios / comillas accidentales
    token = (token or "").strip().strip('"').strip("'")
    try:
        sub = decode_token(token).get("sub")
    except ExpiredSignatureError:
        raise NoAutorizado("Token expirado") from None
    except JWTError:
        raise NoAutorizado("Token no válido") from None
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise NoAutorizado("Token no válido") from None
