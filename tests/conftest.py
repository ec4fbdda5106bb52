"""
Fixtures compartidas.

La BD es SQLite en memoria (StaticPool): las variables de entorno se fijan
antes de importar clinica_backend para que engine y CLINICA_ALIAS las tomen.
"""
import os
from datetime import time, timedelta
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CLINICA_ALIAS"] = "femimed"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import pytest
from fastapi.testclient import TestClient

from clinica_backend import auth_models, config, notificaciones  # noqa: F401
from clinica_backend.api_main import app, get_current_user
from clinica_backend.auth_models import RolUsuario
from clinica_backend.auth_service import crea_usuario, get_usuario_by_id
from clinica_backend.db import Base, db_session, engine
from clinica_backend.models import (
    Consulta,
    Especialidad,
    EstadoConsulta,
    Medico,
    Moneda,
    Paciente,
    Servicio,
    Sexo,
    TipoConsulta,
)
from clinica_backend.tiempo import hoy


# ============================================================================
# BASE DE DATOS
# ============================================================================


@pytest.fixture(autouse=True)
def _db():
    """BD limpia para cada test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


# ============================================================================
# FACTORIES
# ============================================================================


@pytest.fixture
def especialidad():
    with db_session() as s:
        e = Especialidad(nombre_especialidad="Ginecología", tarifa_consulta=Decimal("80"), clinica_alias="femimed")
        s.add(e)
        s.flush()
        return e.id


@pytest.fixture
def medico(especialidad):
    with db_session() as s:
        m = Medico(
            nombres="Ana",
            apellidos="Rodríguez",
            email="ana@femimed.local",
            especialidad_id=especialidad,
            clinica_alias="femimed",
        )
        s.add(m)
        s.flush()
        return m.id


@pytest.fixture
def otro_medico(especialidad):
    with db_session() as s:
        m = Medico(
            nombres="Carlos",
            apellidos="Pérez",
            email="carlos@femimed.local",
            especialidad_id=especialidad,
            clinica_alias="femimed",
        )
        s.add(m)
        s.flush()
        return m.id


@pytest.fixture
def paciente():
    with db_session() as s:
        p = Paciente(
            nombres="María",
            apellidos="González",
            cedula="V-12345678",
            email="maria@example.com",
            telefono="0414-1234567",
            sexo=Sexo.FEMENINO,
            clinica_alias="femimed",
        )
        s.add(p)
        s.flush()
        return p.id


@pytest.fixture
def servicio(especialidad):
    with db_session() as s:
        sv = Servicio(
            nombre_servicio="Ecografía",
            especialidad_id=especialidad,
            monto_base=Decimal("50"),
            moneda=Moneda.USD,
            clinica_alias="femimed",
        )
        s.add(sv)
        s.flush()
        return sv.id


@pytest.fixture
def nueva_consulta(paciente, medico):
    """Crea una consulta directamente en BD, en cualquier estado y fecha."""

    def _crea(
        estado: EstadoConsulta = EstadoConsulta.AGENDADA,
        dias: int = 0,
        paciente_id: int | None = None,
        medico_id: int | None = None,
        hora: time = time(10, 0),
    ) -> int:
        with db_session() as s:
            c = Consulta(
                paciente_id=paciente_id or paciente,
                medico_id=medico_id or medico,
                motivo_consulta="Control anual",
                tipo_consulta=TipoConsulta.CONTROL,
                fecha_pautada=hoy() + timedelta(days=dias),
                hora_pautada=hora,
                estado_consulta=estado,
                clinica_alias="femimed",
            )
            s.add(c)
            s.flush()
            return c.id

    return _crea


# ============================================================================
# USUARIOS Y CLIENTE HTTP
# ============================================================================


@pytest.fixture
def usuario(medico):
    """Usuario del rol indicado; el rol medico queda asociado al médico de la fixture."""

    def _crea(rol: str, username: str | None = None):
        medico_id = medico if rol == RolUsuario.MEDICO.value else None
        uid = crea_usuario(username or f"{rol}_test", "secreto123", rol, medico_id=medico_id)
        return get_usuario_by_id(uid)

    return _crea


@pytest.fixture
def cliente(usuario):
    """TestClient autenticado con el rol pedido (sin pasar por /auth/login)."""

    def _cliente(rol: str) -> TestClient:
        u = usuario(rol)
        app.dependency_overrides[get_current_user] = lambda: u
        return TestClient(app)

    yield _cliente
    app.dependency_overrides.clear()


# ============================================================================
# EMAIL
# ============================================================================


@pytest.fixture
def emails(monkeypatch):
    """Activa el envío y captura los mensajes en lugar de abrir SMTP."""
    enviados: list[dict] = []

    def _captura(msg, destinatarios):
        enviados.append({"subject": msg["Subject"], "to": destinatarios, "msg": msg})

    monkeypatch.setattr(config, "EMAIL_ENABLED", True)
    monkeypatch.setattr(notificaciones, "_smtp_send", _captura)
    return enviados
