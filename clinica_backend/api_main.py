from __future__ import annotations

import logging
from datetime import date, time
from typing import Any, Callable

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinica_backend import consultas, finanzas, historico, importacion, informes, remisiones, services
from clinica_backend.auth_models import RolUsuario, Usuario
from clinica_backend.auth_security import usuario_id_del_token
from clinica_backend.auth_service import (
    autentica,
    cambia_password,
    crea_usuario,
    emite_token,
    get_usuario_by_id,
    lista_usuarios_flat,
)
from clinica_backend.config import CLINICA_ALIAS, CLINICA_NOMBRE, configure_logging
from clinica_backend.db import db_session
from clinica_backend.errors import ClinicaError, DatosInvalidos, NoAutorizado, PermisoDenegado
from clinica_backend.seed import seed_base
from clinica_backend.tiempo import ahora

logger = logging.getLogger(__name__)

API = "/api/v1"

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API}/auth/login")

app = FastAPI(title=f"{CLINICA_NOMBRE} API", version="1.0.0")

ADMIN = RolUsuario.ADMINISTRADOR
SECRETARIA = RolUsuario.SECRETARIA
MEDICO = RolUsuario.MEDICO
FINANZAS = RolUsuario.FINANZAS


# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tablas (incluida usuarios) y seed base (idempotente)
    configure_logging()
    services.init_db()
    seed_base()


# Errores y respuestas

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": {"message": message}})


@app.exception_handler(ClinicaError)
def clinica_error_handler(_request: Request, exc: ClinicaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Error interno: %s", exc.message)
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        return _error(exc.status_code, "Token de acceso requerido")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errores = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}" for e in exc.errors()
    )
    return _error(status.HTTP_400_BAD_REQUEST, f"Datos inválidos: {errores}")


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def _archivo(contenido: bytes, filename: str, media_type: str) -> Response:
    return Response(
        content=contenido,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Dependencias auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Usuario:
    u = get_usuario_by_id(usuario_id_del_token(token))
    if not u or not u.activo:
        raise NoAutorizado("Usuario no válido")
    return u


def require_roles(*roles: RolUsuario) -> Callable[..., Usuario]:
    def dependencia(user: Usuario = Depends(get_current_user)) -> Usuario:
        if user.rol not in roles:
            raise PermisoDenegado("Acceso denegado")
        return user

    return dependencia


# Schemas auth

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict[str, Any]


class RegisterIn(BaseModel):
    username: str
    password: str
    rol: str
    medico_id: int | None = None
    email: str | None = None


class CambioPasswordIn(BaseModel):
    password_actual: str
    password_nueva: str


# Schemas dominio

class PacienteIn(BaseModel):
    nombres: str | None = None
    apellidos: str | None = None
    cedula: str | None = None
    edad: int | None = None
    sexo: str | None = None
    email: str | None = None
    telefono: str | None = None
    direccion: str | None = None
    fur: date | None = None
    paridad: str | None = None
    antecedentes_medicos: str | None = None
    alergias: str | None = None
    medicamentos: str | None = None
    activo: bool | None = None


class EspecialidadIn(BaseModel):
    nombre_especialidad: str | None = None
    descripcion: str | None = None
    tarifa_consulta: float | None = Field(default=None, allow_inf_nan=False)
    activa: bool | None = None


class MedicoIn(BaseModel):
    nombres: str | None = None
    apellidos: str | None = None
    cedula: str | None = None
    email: str | None = None
    telefono: str | None = None
    especialidad_id: int | None = None
    mpps: str | None = None
    cm: str | None = None
    activo: bool | None = None


class ServicioIn(BaseModel):
    nombre_servicio: str | None = None
    especialidad_id: int | None = None
    monto_base: float | None = Field(default=None, allow_inf_nan=False)
    moneda: str | None = None
    descripcion: str | None = None
    activo: bool | None = None


class ConsultaIn(BaseModel):
    paciente_id: int | None = None
    medico_id: int | None = None
    motivo_consulta: str | None = None
    tipo_consulta: str | None = None
    fecha_pautada: date | None = None
    hora_pautada: time | None = None
    duracion_estimada: int | None = None
    estado_consulta: str | None = None
    prioridad: str | None = None
    observaciones: str | None = None
    notas_internas: str | None = None
    recordatorio_enviado: bool | None = None


class CancelarIn(BaseModel):
    motivo_cancelacion: str | None = None


class ReagendarIn(BaseModel):
    fecha_pautada: date | None = None
    hora_pautada: time | None = None


class LineaServicioIn(BaseModel):
    servicio_id: int
    monto_pagado: float | None = Field(default=None, allow_inf_nan=False)
    moneda: str | None = None
    observaciones: str | None = None


class FinalizarIn(BaseModel):
    servicios: list[LineaServicioIn] = Field(default_factory=list)
    metodo_pago: str | None = None


class FinanzasIn(BaseModel):
    filtros: dict[str, Any] = Field(default_factory=dict)
    paginacion: dict[str, Any] | None = None
    moneda: str | None = None


class PagoIn(BaseModel):
    fecha_pago: date | None = None
    metodo_pago: str | None = None
    observaciones: str | None = None


class ExportarIn(BaseModel):
    formato: str | None = None
    filtros: dict[str, Any] = Field(default_factory=dict)


class ExportarAvanzadoIn(BaseModel):
    filtros: dict[str, Any] | None = None
    opciones: dict[str, Any] | None = None


class HistoricoIn(BaseModel):
    paciente_id: int | None = None
    medico_id: int | None = None
    consulta_id: int | None = None
    motivo_consulta: str | None = None
    diagnostico: str | None = None
    conclusiones: str | None = None
    plan: str | None = None
    fecha_consulta: date | None = None


class PlantillaIn(BaseModel):
    nombre: str | None = None
    descripcion: str | None = None
    motivo_consulta_template: str | None = None
    diagnostico_template: str | None = None
    conclusiones_template: str | None = None
    plan_template: str | None = None
    activo: bool | None = None


class RemisionIn(BaseModel):
    paciente_id: int | None = None
    medico_remitente_id: int | None = None
    medico_remitido_id: int | None = None
    motivo_remision: str | None = None
    observaciones: str | None = None


class EstadoRemisionIn(BaseModel):
    estado_remision: str
    observaciones: str | None = None


class InformeIn(BaseModel):
    titulo: str | None = None
    tipo_informe: str | None = None
    contenido: str | None = None
    paciente_id: int | None = None
    medico_id: int | None = None
    fecha_emision: date | None = None
    estado: str | None = None
    observaciones: str | None = None


class FirmaIn(BaseModel):
    certificado_digital: str | None = None


class EnvioIn(BaseModel):
    destinatario: str | None = None
    metodo_envio: str = "email"
    observaciones: str | None = None


class ConfiguracionInformeIn(BaseModel):
    prefijo_numero: str | None = None
    nombre_clinica: str | None = None
    pie_pagina: str | None = None


class TipoCambioIn(BaseModel):
    usd_to_ves: float = Field(allow_inf_nan=False)
    fecha: date | None = None


def _datos(payload: BaseModel) -> dict[str, Any]:
    return payload.model_dump(exclude_unset=True)


# HEALTH (sin JWT)

@app.get(f"{API}/health")
def health() -> dict[str, Any]:
    with db_session() as s:
        s.execute(text("SELECT 1"))
    return ok({"status": "ok", "clinica": CLINICA_ALIAS, "timestamp": ahora().isoformat()})


# AUTH

@app.post(f"{API}/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = autentica(form.username, form.password)
    if not u:
        raise NoAutorizado("Credenciales inválidas")
    return TokenOut(
        access_token=emite_token(u),
        user={
            "id": u.id,
            "username": u.username,
            "rol": u.rol.value,
            "medico_id": u.medico_id,
            "clinica_alias": u.clinica_alias,
        },
    )


@app.get(f"{API}/auth/me")
def me(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok({
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "rol": user.rol.value,
        "medico_id": user.medico_id,
        "clinica_alias": user.clinica_alias,
    })


@app.post(f"{API}/auth/register", status_code=201)
def register(payload: RegisterIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    uid = crea_usuario(payload.username, payload.password, payload.rol, payload.medico_id, payload.email)
    return ok({"user_id": uid})


@app.post(f"{API}/auth/change-password")
def change_password(payload: CambioPasswordIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    cambia_password(user.id, payload.password_actual, payload.password_nueva)
    return ok(message="Contraseña actualizada")


@app.get(f"{API}/usuarios")
def api_usuarios(user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return ok(lista_usuarios_flat())


# PACIENTES

@app.get(f"{API}/pacientes")
def api_pacientes(
    search: str | None = None,
    solo_activos: bool = True,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(services.lista_pacientes_flat(search, solo_activos, page, limit))


@app.get(f"{API}/pacientes/{{paciente_id}}")
def api_paciente(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.get_paciente_flat(paciente_id))


@app.post(f"{API}/pacientes", status_code=201)
def api_crea_paciente(
    payload: PacienteIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    datos = _datos(payload)
    pid = services.crea_paciente(datos.pop("nombres", None), datos.pop("apellidos", None), **datos)
    return ok(services.get_paciente_flat(pid))


@app.put(f"{API}/pacientes/{{paciente_id}}")
def api_actualiza_paciente(
    paciente_id: int,
    payload: PacienteIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    return ok(services.actualiza_paciente(paciente_id, _datos(payload)))


@app.delete(f"{API}/pacientes/{{paciente_id}}")
def api_elimina_paciente(paciente_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    services.elimina_paciente(paciente_id)
    return ok(message="Paciente desactivado")


# ESPECIALIDADES

@app.get(f"{API}/especialidades")
def api_especialidades(solo_activas: bool = False, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.lista_especialidades_flat(solo_activas))


@app.get(f"{API}/especialidades/{{especialidad_id}}")
def api_especialidad(especialidad_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.get_especialidad_flat(especialidad_id))


@app.get(f"{API}/especialidades/{{especialidad_id}}/servicios")
def api_servicios_especialidad(especialidad_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.servicios_por_especialidad(especialidad_id))


@app.post(f"{API}/especialidades", status_code=201)
def api_crea_especialidad(payload: EspecialidadIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    eid = services.crea_especialidad(payload.nombre_especialidad or "", payload.descripcion, payload.tarifa_consulta)
    return ok(services.get_especialidad_flat(eid))


@app.put(f"{API}/especialidades/{{especialidad_id}}")
def api_actualiza_especialidad(
    especialidad_id: int,
    payload: EspecialidadIn,
    user: Usuario = Depends(require_roles(ADMIN)),
) -> dict[str, Any]:
    return ok(services.actualiza_especialidad(especialidad_id, _datos(payload)))


@app.delete(f"{API}/especialidades/{{especialidad_id}}")
def api_elimina_especialidad(especialidad_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    services.elimina_especialidad(especialidad_id)
    return ok(message="Especialidad eliminada")


# MEDICOS

@app.get(f"{API}/medicos")
def api_medicos(
    especialidad_id: int | None = None,
    solo_activos: bool = True,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(services.lista_medicos_flat(especialidad_id, solo_activos))


@app.get(f"{API}/medicos/{{medico_id}}")
def api_medico(medico_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.get_medico_flat(medico_id))


@app.post(f"{API}/medicos", status_code=201)
def api_crea_medico(payload: MedicoIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    datos = _datos(payload)
    mid = services.crea_medico(
        datos.pop("nombres", None) or "",
        datos.pop("apellidos", None) or "",
        datos.pop("especialidad_id", None),
        **datos,
    )
    return ok(services.get_medico_flat(mid))


@app.put(f"{API}/medicos/{{medico_id}}")
def api_actualiza_medico(medico_id: int, payload: MedicoIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return ok(services.actualiza_medico(medico_id, _datos(payload)))


@app.delete(f"{API}/medicos/{{medico_id}}")
def api_elimina_medico(medico_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return ok(services.elimina_medico(medico_id))


# SERVICIOS

@app.get(f"{API}/servicios")
def api_servicios(
    especialidad_id: int | None = None,
    activo: bool | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(services.lista_servicios_flat(especialidad_id, activo))


@app.get(f"{API}/servicios/por-especialidad/{{especialidad_id}}")
def api_servicios_por_especialidad(especialidad_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.servicios_por_especialidad(especialidad_id))


@app.get(f"{API}/servicios/{{servicio_id}}")
def api_servicio(servicio_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.get_servicio_flat(servicio_id))


@app.post(f"{API}/servicios", status_code=201)
def api_crea_servicio(payload: ServicioIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    datos = _datos(payload)
    return ok(services.crea_servicio(
        datos.get("nombre_servicio") or "",
        datos.get("especialidad_id"),
        datos.get("monto_base"),
        datos.get("moneda") or "USD",
        datos.get("descripcion"),
        datos.get("activo", True),
    ))


@app.put(f"{API}/servicios/{{servicio_id}}")
def api_actualiza_servicio(servicio_id: int, payload: ServicioIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return ok(services.actualiza_servicio(servicio_id, _datos(payload)))


@app.delete(f"{API}/servicios/{{servicio_id}}")
def api_elimina_servicio(servicio_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    services.elimina_servicio(servicio_id)
    return ok(message="Servicio eliminado")


# TIPOS DE CAMBIO

@app.get(f"{API}/tipos-cambio/actual")
def api_tipo_cambio(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(services.tipo_cambio_actual())


@app.post(f"{API}/tipos-cambio", status_code=201)
def api_registra_tipo_cambio(payload: TipoCambioIn, user: Usuario = Depends(require_roles(ADMIN, FINANZAS))) -> dict[str, Any]:
    return ok(services.registra_tipo_cambio(payload.usd_to_ves, payload.fecha))


# CONSULTAS

@app.get(f"{API}/consultas")
def api_consultas(
    paciente_id: int | None = None,
    medico_id: int | None = None,
    estado: str | None = None,
    fecha_desde: date | None = None,
    fecha_hasta: date | None = None,
    prioridad: str | None = None,
    tipo_consulta: str | None = None,
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    r = consultas.obtener_consultas({
        "paciente_id": paciente_id,
        "medico_id": medico_id,
        "estado": estado,
        "fecha_desde": fecha_desde,
        "fecha_hasta": fecha_hasta,
        "prioridad": prioridad,
        "tipo_consulta": tipo_consulta,
        "search": search,
        "page": page,
        "limit": limit,
    })
    return ok(r["items"], paginacion={k: r[k] for k in ("total", "page", "limit", "total_pages")})


@app.get(f"{API}/consultas/hoy")
def api_consultas_hoy(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.consultas_hoy())


@app.get(f"{API}/consultas/del-dia")
def api_consultas_del_dia(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.consultas_del_dia(user))


@app.get(f"{API}/consultas/pendientes")
def api_consultas_pendientes(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.consultas_pendientes())


@app.get(f"{API}/consultas/search")
def api_buscar_consultas(q: str = Query(..., min_length=1), user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.buscar_consultas(q))


@app.get(f"{API}/consultas/estadisticas")
def api_estadisticas_consultas(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.estadisticas_consultas())


@app.get(f"{API}/consultas/stats/por-estado")
def api_stats_estado(
    fecha_inicio: date | None = None,
    fecha_fin: date | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(consultas.estadisticas_por_estado(fecha_inicio, fecha_fin))


@app.get(f"{API}/consultas/stats/por-especialidad")
def api_stats_especialidad(
    fecha_inicio: date | None = None,
    fecha_fin: date | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(consultas.estadisticas_por_especialidad(fecha_inicio, fecha_fin))


@app.get(f"{API}/consultas/stats/por-medico")
def api_stats_medico(
    fecha_inicio: date | None = None,
    fecha_fin: date | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(consultas.estadisticas_por_medico(fecha_inicio, fecha_fin))


@app.get(f"{API}/consultas/by-paciente/{{paciente_id}}")
def api_consultas_paciente(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.consultas_por_paciente(paciente_id))


@app.get(f"{API}/consultas/by-medico/{{medico_id}}")
def api_consultas_medico(medico_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.consultas_por_medico(medico_id))


@app.get(f"{API}/consultas/{{consulta_id}}")
def api_consulta(consulta_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.obtener_consulta(consulta_id))


@app.post(f"{API}/consultas", status_code=201)
def api_crea_consulta(
    payload: ConsultaIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    return ok(consultas.crear_consulta(_datos(payload), user))


@app.put(f"{API}/consultas/{{consulta_id}}")
def api_actualiza_consulta(
    consulta_id: int,
    payload: ConsultaIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    return ok(consultas.actualizar_consulta(consulta_id, _datos(payload), user))


@app.delete(f"{API}/consultas/{{consulta_id}}")
def api_elimina_consulta(consulta_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    consultas.eliminar_consulta(consulta_id)
    return ok(message="Consulta eliminada")


@app.put(f"{API}/consultas/{{consulta_id}}/cancelar")
def api_cancela_consulta(
    consulta_id: int,
    payload: CancelarIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    return ok(consultas.cancelar_consulta(consulta_id, payload.motivo_cancelacion, user))


@app.put(f"{API}/consultas/{{consulta_id}}/reagendar")
def api_reagenda_consulta(
    consulta_id: int,
    payload: ReagendarIn,
    user: Usuario = Depends(require_roles(ADMIN, SECRETARIA, MEDICO)),
) -> dict[str, Any]:
    return ok(consultas.reagendar_consulta(consulta_id, payload.fecha_pautada, payload.hora_pautada, user))


@app.put(f"{API}/consultas/{{consulta_id}}/iniciar")
def api_inicia_consulta(consulta_id: int, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    return ok(consultas.iniciar_consulta(consulta_id, user))


@app.put(f"{API}/consultas/{{consulta_id}}/completar")
def api_completa_consulta(consulta_id: int, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    return ok(consultas.completar_consulta(consulta_id, user))


@app.put(f"{API}/consultas/{{consulta_id}}/finalizar")
def api_finaliza_consulta(
    consulta_id: int,
    payload: FinalizarIn,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    # el control de rol lo hace el servicio (secretaria / administrador)
    servicios_payload = [linea.model_dump(exclude_none=True) for linea in payload.servicios]
    r = consultas.finalizar_consulta(consulta_id, servicios_payload, user, payload.metodo_pago)
    return ok(r, message=r["mensaje"])


@app.get(f"{API}/consultas/{{consulta_id}}/servicios")
def api_servicios_consulta(consulta_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.servicios_de_consulta(consulta_id))


@app.get(f"{API}/consultas/{{consulta_id}}/totales")
def api_totales_consulta(consulta_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.totales_consulta(consulta_id))


@app.get(f"{API}/consultas/{{consulta_id}}/detalle-finalizacion")
def api_detalle_finalizacion(consulta_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(consultas.detalle_finalizacion(consulta_id))


# FINANZAS (finanzas / administrador)

solo_finanzas = require_roles(ADMIN, FINANZAS)


@app.post(f"{API}/finanzas/consultas")
def api_consultas_financieras(payload: FinanzasIn, user: Usuario = Depends(solo_finanzas)) -> dict[str, Any]:
    r = finanzas.consultas_financieras(payload.filtros, payload.paginacion, payload.moneda)
    return ok(r["data"], paginacion=r["paginacion"])


@app.post(f"{API}/finanzas/resumen")
def api_resumen_financiero(payload: FinanzasIn, user: Usuario = Depends(solo_finanzas)) -> dict[str, Any]:
    return ok(finanzas.resumen_financiero(payload.filtros, payload.moneda))


@app.post(f"{API}/finanzas/consultas/{{consulta_id}}/pagar")
def api_marcar_pagada(consulta_id: int, payload: PagoIn, user: Usuario = Depends(solo_finanzas)) -> dict[str, Any]:
    r = finanzas.marcar_pagada(consulta_id, payload.fecha_pago, payload.metodo_pago, payload.observaciones)
    return ok(message=r["message"])


@app.post(f"{API}/finanzas/exportar")
def api_exportar(payload: ExportarIn, user: Usuario = Depends(solo_finanzas)) -> Response:
    exp = finanzas.exportar_reporte(payload.formato, payload.filtros)
    return _archivo(exp.contenido, exp.filename, exp.media_type)


@app.post(f"{API}/finanzas/exportar-avanzado")
def api_exportar_avanzado(payload: ExportarAvanzadoIn, user: Usuario = Depends(solo_finanzas)) -> Response:
    exp = finanzas.exportar_reporte_avanzado(payload.filtros, payload.opciones)
    return _archivo(exp.contenido, exp.filename, exp.media_type)


# HISTORICO

@app.get(f"{API}/historico")
def api_historico(
    paciente_id: int | None = None,
    medico_id: int | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    if paciente_id or medico_id:
        return ok(historico.historico_filtrado(paciente_id, medico_id))
    return ok(historico.historico_completo())


@app.get(f"{API}/historico/by-paciente/{{paciente_id}}")
def api_historico_paciente(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.historico_por_paciente(paciente_id))


@app.get(f"{API}/historico/by-paciente/{{paciente_id}}/latest")
def api_historico_ultimo(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.ultimo_historico_paciente(paciente_id))


@app.get(f"{API}/historico/by-paciente/{{paciente_id}}/medicos")
def api_historico_medicos(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.medicos_con_historia(paciente_id))


@app.get(f"{API}/historico/by-paciente/{{paciente_id}}/medico/{{medico_id}}")
def api_historico_paciente_medico(paciente_id: int, medico_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.historico_paciente_medico(paciente_id, medico_id))


@app.get(f"{API}/historico/by-paciente/{{paciente_id}}/especialidad/{{especialidad_id}}")
def api_historico_especialidad(
    paciente_id: int,
    especialidad_id: int,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok({"tiene_historia": historico.tiene_historia_por_especialidad(paciente_id, especialidad_id)})


@app.get(f"{API}/historico/by-medico/{{medico_id}}")
def api_historico_medico(medico_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.historico_por_medico(medico_id))


@app.get(f"{API}/historico/{{historico_id}}")
def api_historico_uno(historico_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.get_historico(historico_id))


@app.post(f"{API}/historico", status_code=201)
def api_crea_historico(payload: HistoricoIn, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    datos = _datos(payload)
    if user.rol == MEDICO:
        datos["medico_id"] = user.medico_id
    return ok(historico.crea_historico(datos))


@app.put(f"{API}/historico/{{historico_id}}")
def api_actualiza_historico(
    historico_id: int,
    payload: HistoricoIn,
    user: Usuario = Depends(require_roles(ADMIN, MEDICO)),
) -> dict[str, Any]:
    return ok(historico.actualiza_historico(historico_id, _datos(payload)))


@app.delete(f"{API}/historico/{{historico_id}}")
def api_elimina_historico(historico_id: int, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    historico.elimina_historico(historico_id)
    return ok(message="Historia médica eliminada")


# PLANTILLAS DE HISTORIA (por médico)

def _medico_autenticado(user: Usuario) -> int:
    if not user.medico_id:
        raise NoAutorizado("Médico no autenticado")
    return user.medico_id


@app.get(f"{API}/plantillas-historias")
def api_plantillas(activas: bool = True, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.lista_plantillas(_medico_autenticado(user), solo_activas=activas))


@app.get(f"{API}/plantillas-historias/{{plantilla_id}}")
def api_plantilla(plantilla_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(historico.get_plantilla(plantilla_id, _medico_autenticado(user)))


@app.post(f"{API}/plantillas-historias", status_code=201)
def api_crea_plantilla(payload: PlantillaIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    p = historico.crea_plantilla(_medico_autenticado(user), _datos(payload))
    return ok(p, message="Plantilla creada exitosamente")


@app.put(f"{API}/plantillas-historias/{{plantilla_id}}")
def api_actualiza_plantilla(
    plantilla_id: int,
    payload: PlantillaIn,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    p = historico.actualiza_plantilla(plantilla_id, _medico_autenticado(user), _datos(payload))
    return ok(p, message="Plantilla actualizada exitosamente")


@app.delete(f"{API}/plantillas-historias/{{plantilla_id}}")
def api_elimina_plantilla(plantilla_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    historico.elimina_plantilla(plantilla_id, _medico_autenticado(user))
    return ok(message="Plantilla eliminada exitosamente")


# REMISIONES

@app.get(f"{API}/remisiones")
def api_remisiones(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(remisiones.lista_remisiones())


@app.get(f"{API}/remisiones/statistics")
def api_remisiones_stats(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(remisiones.estadisticas_remisiones())


@app.get(f"{API}/remisiones/by-medico")
def api_remisiones_medico(
    medico_id: int,
    tipo: str | None = None,
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(remisiones.remisiones_por_medico(medico_id, tipo))


@app.get(f"{API}/remisiones/by-paciente/{{paciente_id}}")
def api_remisiones_paciente(paciente_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(remisiones.remisiones_por_paciente(paciente_id))


@app.get(f"{API}/remisiones/by-status")
def api_remisiones_estado(estado: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(remisiones.remisiones_por_estado(estado))


@app.get(f"{API}/remisiones/{{remision_id}}")
def api_remision(remision_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(remisiones.get_remision(remision_id))


@app.post(f"{API}/remisiones", status_code=201)
def api_crea_remision(payload: RemisionIn, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    datos = _datos(payload)
    if user.rol == MEDICO and not datos.get("medico_remitente_id"):
        datos["medico_remitente_id"] = user.medico_id
    return ok(remisiones.crea_remision(datos), message="Remisión creada exitosamente")


@app.put(f"{API}/remisiones/{{remision_id}}/status")
def api_estado_remision(
    remision_id: int,
    payload: EstadoRemisionIn,
    user: Usuario = Depends(require_roles(ADMIN, MEDICO, SECRETARIA)),
) -> dict[str, Any]:
    return ok(remisiones.actualiza_estado_remision(remision_id, payload.estado_remision, payload.observaciones))


# INFORMES MEDICOS

@app.get(f"{API}/informes-medicos")
def api_informes(
    paciente_id: int | None = None,
    medico_id: int | None = None,
    estado: str | None = None,
    tipo_informe: str | None = None,
    fecha_desde: date | None = None,
    fecha_hasta: date | None = None,
    busqueda: str | None = None,
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(informes.lista_informes({
        "paciente_id": paciente_id,
        "medico_id": medico_id,
        "estado": estado,
        "tipo_informe": tipo_informe,
        "fecha_desde": fecha_desde,
        "fecha_hasta": fecha_hasta,
        "busqueda": busqueda,
        "limit": limit,
        "offset": offset,
    }))


@app.get(f"{API}/informes-medicos/configuracion")
def api_config_informes(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.obtener_configuracion())


@app.put(f"{API}/informes-medicos/configuracion")
def api_actualiza_config_informes(payload: ConfiguracionInformeIn, user: Usuario = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return ok(informes.actualiza_configuracion(_datos(payload)))


@app.get(f"{API}/informes-medicos/estadisticas/general")
def api_stats_informes(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.estadisticas_informes())


@app.get(f"{API}/informes-medicos/estadisticas/medico")
def api_stats_informes_medico(medico_id: int | None = None, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    mid = medico_id or user.medico_id
    if not mid:
        raise DatosInvalidos("Se requiere medico_id")
    return ok(informes.estadisticas_por_medico(mid))


@app.get(f"{API}/informes-medicos/estadisticas/medicos")
def api_stats_informes_medicos(user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.estadisticas_todos_medicos())


@app.get(f"{API}/informes-medicos/{{informe_id}}")
def api_informe(informe_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.get_informe(informe_id))


@app.post(f"{API}/informes-medicos", status_code=201)
def api_crea_informe(payload: InformeIn, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    return ok(informes.crea_informe(_datos(payload), user))


@app.put(f"{API}/informes-medicos/{{informe_id}}")
def api_actualiza_informe(
    informe_id: int,
    payload: InformeIn,
    user: Usuario = Depends(require_roles(ADMIN, MEDICO)),
) -> dict[str, Any]:
    return ok(informes.actualiza_informe(informe_id, _datos(payload)))


@app.delete(f"{API}/informes-medicos/{{informe_id}}")
def api_elimina_informe(informe_id: int, user: Usuario = Depends(require_roles(ADMIN, MEDICO))) -> dict[str, Any]:
    informes.elimina_informe(informe_id)
    return ok(message="Informe eliminado")


@app.post(f"{API}/informes-medicos/{{informe_id}}/firmar")
def api_firma_informe(
    informe_id: int,
    payload: FirmaIn,
    request: Request,
    user: Usuario = Depends(require_roles(ADMIN, MEDICO)),
) -> dict[str, Any]:
    r = informes.firmar_informe(
        informe_id,
        user,
        payload.certificado_digital,
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )
    return ok(r, message="Informe firmado exitosamente")


@app.get(f"{API}/informes-medicos/{{informe_id}}/verificar-firma")
def api_verifica_firma(informe_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.verificar_firma(informe_id))


@app.get(f"{API}/informes-medicos/{{informe_id}}/pdf")
def api_pdf_informe(informe_id: int, user: Usuario = Depends(get_current_user)) -> Response:
    contenido, filename = informes.pdf_informe(informe_id)
    return _archivo(contenido, filename, "application/pdf")


@app.post(f"{API}/informes-medicos/{{informe_id}}/enviar")
def api_envia_informe(
    informe_id: int,
    payload: EnvioIn,
    user: Usuario = Depends(require_roles(ADMIN, MEDICO, SECRETARIA)),
) -> dict[str, Any]:
    return ok(informes.enviar_informe(informe_id, payload.destinatario, payload.metodo_envio, payload.observaciones))


@app.get(f"{API}/informes-medicos/{{informe_id}}/envios")
def api_envios_informe(informe_id: int, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return ok(informes.envios_de_informe(informe_id))


# IMPORTACION (Word)

def _medico_del_token(user: Usuario) -> int | None:
    return user.medico_id if user.rol == MEDICO else None


@app.post(f"{API}/importacion/single", status_code=201)
def api_importa_documento(
    archivo: UploadFile | None = File(None),
    medico_id: str | None = Form(None),
    user: Usuario = Depends(require_roles(ADMIN, MEDICO, SECRETARIA)),
) -> dict[str, Any]:
    if archivo is None:
        importacion.valida_archivo(None, b"")
    mid = importacion.resuelve_medico_id(_medico_del_token(user), medico_id)
    r = importacion.importar_documento(archivo.filename, archivo.file.read(), mid)
    return ok(r, message=r["message"])


@app.post(f"{API}/importacion/multiple")
def api_importa_documentos(
    archivos: list[UploadFile] | None = File(None),
    medico_id: str | None = Form(None),
    user: Usuario = Depends(require_roles(ADMIN, MEDICO, SECRETARIA)),
) -> dict[str, Any]:
    mid = importacion.resuelve_medico_id(_medico_del_token(user), medico_id)
    lote = [(a.filename or "", a.file.read()) for a in archivos or []]
    return ok(importacion.importar_documentos(lote, mid))
