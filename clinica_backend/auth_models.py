from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinica_backend.config import CLINICA_ALIAS
from clinica_backend.db import Base
from clinica_backend.models import Medico, enum_column
from clinica_backend.tiempo import ahora


class RolUsuario(enum.Enum):
    ADMINISTRADOR = "administrador"
    SECRETARIA = "secretaria"
    MEDICO = "medico"
    FINANZAS = "finanzas"


class Usuario(Base):
    """
    Usuario de la aplicación.
    - username único
    - password_hash con bcrypt (passlib)
    - rol: administrador / secretaria / medico / finanzas
    - medico_id solo para usuarios con rol medico
    """
    __tablename__ = "usuarios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    rol: Mapped[RolUsuario] = mapped_column(enum_column(RolUsuario), nullable=False)
    medico_id: Mapped[int | None] = mapped_column(ForeignKey("medicos.id"), nullable=True)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False)

    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    medico: Mapped[Medico | None] = relationship()
