from __future__ import annotations

import logging

from sqlalchemy import select

from clinica_backend.auth_models import RolUsuario, Usuario
from clinica_backend.auth_security import (
    claims_usuario,
    create_access_token,
    hash_password,
    valida_password,
    verify_password,
)
from clinica_backend.config import CLINICA_ALIAS
from clinica_backend.db import db_session
from clinica_backend.errors import Conflicto, DatosInvalidos, NoAutorizado, NoEncontrado
from clinica_backend.models import Medico

logger = logging.getLogger(__name__)


def _rol(valor: str | RolUsuario) -> RolUsuario:
    if isinstance(valor, RolUsuario):
        return valor
    try:
        return RolUsuario(valor.strip().lower())
    except ValueError:
        raise DatosInvalidos(f"Rol no válido: {valor}") from None


def crea_usuario(
    username: str,
    password: str,
    rol: str | RolUsuario,
    medico_id: int | None = None,
    email: str | None = None,
) -> int:
    username = username.strip().lower()
    if not username or not password:
        raise DatosInvalidos("Username y password son obligatorios.")

    rol = _rol(rol)
    if rol == RolUsuario.MEDICO and medico_id is None:
        raise DatosInvalidos("Un usuario con rol medico debe estar asociado a un médico.")

    with db_session() as s:
        exists = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if exists:
            raise Conflicto("Username ya registrado.")

        if medico_id is not None and s.get(Medico, medico_id) is None:
            raise NoEncontrado("Médico no encontrado")

        u = Usuario(
            username=username,
            password_hash=hash_password(password),
            rol=rol,
            medico_id=medico_id,
            email=email,
            clinica_alias=CLINICA_ALIAS,
            activo=True,
        )
        s.add(u)
        s.flush()
        logger.info("Usuario creado: %s (%s)", username, rol.value)
        return u.id


def autentica(username: str, password: str) -> Usuario | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if not u or not u.activo:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def emite_token(u: Usuario) -> str:
    return create_access_token(str(u.id), claims_usuario(u))


def get_usuario_by_id(user_id: int | str) -> Usuario | None:
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    with db_session() as s:
        return s.get(Usuario, user_id)


def cambia_password(user_id: int, password_actual: str, password_nueva: str) -> None:
    valida_password(password_nueva)
    with db_session() as s:
        u = s.get(Usuario, user_id)
        if not u:
            raise NoEncontrado("Usuario no encontrado")
        if not verify_password(password_actual, u.password_hash):
            raise NoAutorizado("Contraseña actual incorrecta")
        u.password_hash = hash_password(password_nueva)


def lista_usuarios_flat() -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(Usuario).where(Usuario.clinica_alias == CLINICA_ALIAS).order_by(Usuario.username)
        ).all()
        return [
            {
                "id": u.id,
                "username": u.username,
                "email": u.email,
                "rol": u.rol.value,
                "medico_id": u.medico_id,
                "activo": u.activo,
            }
            for u in rows
        ]
