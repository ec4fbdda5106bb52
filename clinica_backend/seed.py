from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from .auth_models import RolUsuario, Usuario
from .auth_security import hash_password
from .config import CLINICA_ALIAS, SEED_ADMIN_PASSWORD, SEED_ADMIN_USERNAME
from .db import db_session
from .models import Especialidad, Medico, Moneda, Servicio

logger = logging.getLogger(__name__)


def seed_base() -> None:
    """
    Carga datos mínimos (idempotente):
    - especialidades
    - médicos
    - servicios por especialidad
    - usuario administrador
    """
    with db_session() as s:
        # Especialidades
        especialidades = [
            ("Ginecología", "Salud del aparato reproductor femenino", Decimal("80")),
            ("Obstetricia", "Control prenatal y del embarazo", Decimal("90")),
            ("Medicina Interna", "Atención integral del adulto", Decimal("60")),
        ]
        for nombre, descripcion, tarifa in especialidades:
            existe = s.execute(
                select(Especialidad).where(
                    Especialidad.clinica_alias == CLINICA_ALIAS,
                    Especialidad.nombre_especialidad == nombre,
                )
            ).scalar_one_or_none()
            if existe is None:
                s.add(Especialidad(
                    nombre_especialidad=nombre,
                    descripcion=descripcion,
                    tarifa_consulta=tarifa,
                    clinica_alias=CLINICA_ALIAS,
                ))
        s.flush()

        por_nombre = {
            e.nombre_especialidad: e
            for e in s.scalars(select(Especialidad).where(Especialidad.clinica_alias == CLINICA_ALIAS))
        }

        # Médicos
        medicos = [
            ("Ana", "Rodríguez", "Ginecología", "a.rodriguez@femimed.local"),
            ("Carlos", "Pérez", "Obstetricia", "c.perez@femimed.local"),
        ]
        for nombres, apellidos, esp, email in medicos:
            existe = s.execute(
                select(Medico).where(
                    Medico.clinica_alias == CLINICA_ALIAS,
                    Medico.nombres == nombres,
                    Medico.apellidos == apellidos,
                )
            ).scalar_one_or_none()
            if existe is None:
                s.add(Medico(
                    nombres=nombres,
                    apellidos=apellidos,
                    email=email,
                    especialidad_id=por_nombre[esp].id,
                    clinica_alias=CLINICA_ALIAS,
                ))

        # Servicios
        servicios = [
            ("Consulta", "Ginecología", Decimal("80"), Moneda.USD),
            ("Citología", "Ginecología", Decimal("35"), Moneda.USD),
            ("Ecografía transvaginal", "Ginecología", Decimal("50"), Moneda.USD),
            ("Consulta", "Obstetricia", Decimal("90"), Moneda.USD),
            ("Ecografía obstétrica", "Obstetricia", Decimal("60"), Moneda.USD),
            ("Consulta", "Medicina Interna", Decimal("2200"), Moneda.VES),
        ]
        for nombre, esp, monto, moneda in servicios:
            especialidad = por_nombre[esp]
            existe = s.execute(
                select(Servicio).where(
                    Servicio.clinica_alias == CLINICA_ALIAS,
                    Servicio.especialidad_id == especialidad.id,
                    Servicio.nombre_servicio == nombre,
                )
            ).scalar_one_or_none()
            if existe is None:
                s.add(Servicio(
                    nombre_servicio=nombre,
                    especialidad_id=especialidad.id,
                    monto_base=monto,
                    moneda=moneda,
                    clinica_alias=CLINICA_ALIAS,
                ))

        # Administrador
        username = SEED_ADMIN_USERNAME.strip().lower()
        if s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none() is None:
            s.add(Usuario(
                username=username,
                password_hash=hash_password(SEED_ADMIN_PASSWORD),
                rol=RolUsuario.ADMINISTRADOR,
                clinica_alias=CLINICA_ALIAS,
                activo=True,
            ))
            logger.info("Usuario administrador '%s' creado", username)
