from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from .config import CLINICA_ALIAS, TIPO_CAMBIO_DEFAULT
from .db import Base, db_session, engine
from .errors import Conflicto, DatosInvalidos, NoEncontrado
from .models import (
    Consulta,
    Especialidad,
    EstadoConsulta,
    Historico,
    InformeMedico,
    Medico,
    Moneda,
    Paciente,
    PlantillaHistoria,
    Remision,
    Servicio,
    ServicioConsulta,
    Sexo,
    TipoCambio,
)
from .tiempo import hoy

logger = logging.getLogger(__name__)

M = TypeVar("M")


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea las tablas si no existen (incluida usuarios)."""
    from . import auth_models  # noqa: F401  registra la tabla usuarios en el metadata

    Base.metadata.create_all(bind=engine)


# =========================
# Helpers
# =========================
def num(valor: Decimal | float | int | None) -> float:
    """Decimal -> float para respuestas JSON."""
    if valor is None:
        return 0.0
    return float(valor)


def a_decimal(valor: Any, campo: str) -> Decimal:
    try:
        d = Decimal(str(valor))
    except (InvalidOperation, TypeError, ValueError):
        raise DatosInvalidos(f"{campo} debe ser numérico") from None
    # NaN e Infinity no son montos
    if not d.is_finite():
        raise DatosInvalidos(f"{campo} debe ser numérico")
    return d


def a_moneda(valor: Any) -> Moneda:
    if isinstance(valor, Moneda):
        return valor
    try:
        return Moneda(str(valor).upper())
    except ValueError:
        raise DatosInvalidos("La moneda debe ser USD o VES") from None


def obtener_o_404(s: Session, modelo: type[M], obj_id: int, mensaje: str) -> M:
    """s.get restringido a la clínica actual."""
    obj = s.get(modelo, obj_id)
    if obj is None or getattr(obj, "clinica_alias", CLINICA_ALIAS) != CLINICA_ALIAS:
        raise NoEncontrado(mensaje)
    return obj


def _aplica(obj: Any, datos: dict, campos: set[str]) -> None:
    for k, v in datos.items():
        if k in campos:
            setattr(obj, k, v)


def _requeridos(datos: dict, campos: list[str]) -> None:
    faltantes = [c for c in campos if datos.get(c) in (None, "")]
    if faltantes:
        raise DatosInvalidos(f"Campos requeridos: {', '.join(faltantes)}")


# =========================
# Serialización "flat"
# =========================
def especialidad_dict(e: Especialidad | None) -> dict | None:
    if e is None:
        return None
    return {
        "id": e.id,
        "nombre_especialidad": e.nombre_especialidad,
        "descripcion": e.descripcion,
        "tarifa_consulta": num(e.tarifa_consulta) if e.tarifa_consulta is not None else None,
        "activa": e.activa,
    }


def medico_dict(m: Medico | None) -> dict | None:
    if m is None:
        return None
    return {
        "id": m.id,
        "nombres": m.nombres,
        "apellidos": m.apellidos,
        "cedula": m.cedula,
        "email": m.email,
        "telefono": m.telefono,
        "especialidad_id": m.especialidad_id,
        "especialidad": especialidad_dict(m.especialidad),
        "mpps": m.mpps,
        "cm": m.cm,
        "activo": m.activo,
    }


def paciente_dict(p: Paciente | None) -> dict | None:
    if p is None:
        return None
    return {
        "id": p.id,
        "nombres": p.nombres,
        "apellidos": p.apellidos,
        "cedula": p.cedula,
        "edad": p.edad,
        "sexo": p.sexo.value if p.sexo else None,
        "email": p.email,
        "telefono": p.telefono,
        "direccion": p.direccion,
        "fur": p.fur.isoformat() if p.fur else None,
        "paridad": p.paridad,
        "antecedentes_medicos": p.antecedentes_medicos,
        "alergias": p.alergias,
        "medicamentos": p.medicamentos,
        "activo": p.activo,
    }


def servicio_dict(sv: Servicio | None) -> dict | None:
    if sv is None:
        return None
    return {
        "id": sv.id,
        "nombre_servicio": sv.nombre_servicio,
        "especialidad_id": sv.especialidad_id,
        "monto_base": num(sv.monto_base),
        "moneda": sv.moneda.value,
        "descripcion": sv.descripcion,
        "activo": sv.activo,
    }


# =========================
# Pacientes
# =========================
CAMPOS_PACIENTE = {
    "nombres", "apellidos", "cedula", "edad", "sexo", "email", "telefono", "direccion",
    "fur", "paridad", "antecedentes_medicos", "alergias", "medicamentos", "activo",
}


def _normaliza_paciente(datos: dict) -> dict:
    datos = {k: v for k, v in datos.items() if k in CAMPOS_PACIENTE}
    for k in ("nombres", "apellidos", "email", "telefono"):
        if isinstance(datos.get(k), str):
            datos[k] = datos[k].strip() or None
    if datos.get("cedula"):
        datos["cedula"] = str(datos["cedula"]).replace(" ", "").replace(".", "").upper()
    if datos.get("sexo") and not isinstance(datos["sexo"], Sexo):
        try:
            datos["sexo"] = Sexo(str(datos["sexo"]).capitalize())
        except ValueError:
            raise DatosInvalidos("Sexo debe ser Masculino, Femenino u Otro") from None
    return datos


def _cedula_en_uso(s: Session, cedula: str, excluir_id: int | None = None) -> bool:
    q = select(Paciente.id).where(Paciente.clinica_alias == CLINICA_ALIAS, Paciente.cedula == cedula)
    if excluir_id is not None:
        q = q.where(Paciente.id != excluir_id)
    return s.execute(q.limit(1)).first() is not None


def crea_paciente(nombres: str, apellidos: str, **datos: Any) -> int:
    datos = _normaliza_paciente({"nombres": nombres, "apellidos": apellidos, **datos})
    _requeridos(datos, ["nombres", "apellidos"])

    with db_session() as s:
        if datos.get("cedula") and _cedula_en_uso(s, datos["cedula"]):
            raise Conflicto("Ya existe un paciente con esa cédula")
        p = Paciente(clinica_alias=CLINICA_ALIAS, **datos)
        s.add(p)
        s.flush()
        logger.info("Paciente creado: %s (%s)", p.id, p.nombre_completo)
        return p.id


def actualiza_paciente(paciente_id: int, datos: dict) -> dict:
    datos = _normaliza_paciente(datos)
    with db_session() as s:
        p = obtener_o_404(s, Paciente, paciente_id, "Paciente no encontrado")
        if datos.get("cedula") and _cedula_en_uso(s, datos["cedula"], excluir_id=p.id):
            raise Conflicto("Ya existe un paciente con esa cédula")
        _aplica(p, datos, CAMPOS_PACIENTE)
        s.flush()
        return paciente_dict(p)


def elimina_paciente(paciente_id: int) -> None:
    """Borrado lógico: el historial clínico se conserva."""
    with db_session() as s:
        p = obtener_o_404(s, Paciente, paciente_id, "Paciente no encontrado")
        p.activo = False


def get_paciente_flat(paciente_id: int) -> dict:
    with db_session() as s:
        return paciente_dict(obtener_o_404(s, Paciente, paciente_id, "Paciente no encontrado"))


def lista_pacientes_flat(
    search: str | None = None,
    solo_activos: bool = True,
    page: int = 1,
    limit: int = 100,
) -> list[dict]:
    with db_session() as s:
        q = select(Paciente).where(Paciente.clinica_alias == CLINICA_ALIAS)
        if solo_activos:
            q = q.where(Paciente.activo.is_(True))
        if search:
            like = f"%{search.strip()}%"
            q = q.where(
                or_(
                    Paciente.nombres.ilike(like),
                    Paciente.apellidos.ilike(like),
                    Paciente.cedula.ilike(like),
                    Paciente.email.ilike(like),
                )
            )
        q = q.order_by(Paciente.apellidos, Paciente.nombres).offset((max(page, 1) - 1) * limit).limit(limit)
        return [paciente_dict(p) for p in s.scalars(q)]


def busca_paciente(s: Session, cedula: str | None = None, email: str | None = None) -> Paciente | None:
    """Primero por cédula, luego por email."""
    base = select(Paciente).where(Paciente.clinica_alias == CLINICA_ALIAS)
    if cedula:
        p = s.scalars(base.where(Paciente.cedula == cedula).limit(1)).first()
        if p:
            return p
    if email:
        return s.scalars(base.where(func.lower(Paciente.email) == email.strip().lower()).limit(1)).first()
    return None


# =========================
# Especialidades
# =========================
def crea_especialidad(nombre_especialidad: str, descripcion: str | None = None, tarifa_consulta: Any = None) -> int:
    nombre = (nombre_especialidad or "").strip()
    if not nombre:
        raise DatosInvalidos("El nombre de la especialidad es requerido")
    with db_session() as s:
        exists = s.execute(
            select(Especialidad.id).where(
                Especialidad.clinica_alias == CLINICA_ALIAS, func.lower(Especialidad.nombre_especialidad) == nombre.lower()
            )
        ).first()
        if exists:
            raise Conflicto("Ya existe una especialidad con ese nombre")
        e = Especialidad(
            nombre_especialidad=nombre,
            descripcion=descripcion,
            tarifa_consulta=a_decimal(tarifa_consulta, "tarifa_consulta") if tarifa_consulta is not None else None,
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(e)
        s.flush()
        return e.id


def actualiza_especialidad(especialidad_id: int, datos: dict) -> dict:
    with db_session() as s:
        e = obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada")
        if "tarifa_consulta" in datos and datos["tarifa_consulta"] is not None:
            datos = {**datos, "tarifa_consulta": a_decimal(datos["tarifa_consulta"], "tarifa_consulta")}
        _aplica(e, datos, {"nombre_especialidad", "descripcion", "tarifa_consulta", "activa"})
        s.flush()
        return especialidad_dict(e)


def elimina_especialidad(especialidad_id: int) -> None:
    with db_session() as s:
        e = obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada")
        if e.medicos:
            raise Conflicto("No se puede eliminar una especialidad con médicos asociados")
        s.delete(e)


def lista_especialidades_flat(solo_activas: bool = False) -> list[dict]:
    with db_session() as s:
        q = select(Especialidad).where(Especialidad.clinica_alias == CLINICA_ALIAS)
        if solo_activas:
            q = q.where(Especialidad.activa.is_(True))
        return [especialidad_dict(e) for e in s.scalars(q.order_by(Especialidad.nombre_especialidad))]


def get_especialidad_flat(especialidad_id: int) -> dict:
    with db_session() as s:
        return especialidad_dict(obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada"))


# =========================
# Médicos
# =========================
CAMPOS_MEDICO = {"nombres", "apellidos", "cedula", "email", "telefono", "especialidad_id", "mpps", "cm", "activo"}


def crea_medico(nombres: str, apellidos: str, especialidad_id: int | None = None, **datos: Any) -> int:
    datos = {k: v for k, v in datos.items() if k in CAMPOS_MEDICO}
    if not (nombres or "").strip() or not (apellidos or "").strip():
        raise DatosInvalidos("Nombres y apellidos del médico son requeridos")

    with db_session() as s:
        if especialidad_id is not None:
            obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada")
        m = Medico(
            nombres=nombres.strip(),
            apellidos=apellidos.strip(),
            especialidad_id=especialidad_id,
            clinica_alias=CLINICA_ALIAS,
            **datos,
        )
        s.add(m)
        s.flush()
        logger.info("Médico creado: %s (%s)", m.id, m.nombre_completo)
        return m.id


def actualiza_medico(medico_id: int, datos: dict) -> dict:
    with db_session() as s:
        m = obtener_o_404(s, Medico, medico_id, "Médico no encontrado")
        if datos.get("especialidad_id") is not None:
            obtener_o_404(s, Especialidad, datos["especialidad_id"], "Especialidad no encontrada")
        _aplica(m, datos, CAMPOS_MEDICO)
        s.flush()
        return medico_dict(m)


def get_medico_flat(medico_id: int) -> dict:
    with db_session() as s:
        return medico_dict(obtener_o_404(s, Medico, medico_id, "Médico no encontrado"))


def lista_medicos_flat(especialidad_id: int | None = None, solo_activos: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Medico).where(Medico.clinica_alias == CLINICA_ALIAS)
        if solo_activos:
            q = q.where(Medico.activo.is_(True))
        if especialidad_id is not None:
            q = q.where(Medico.especialidad_id == especialidad_id)
        return [medico_dict(m) for m in s.scalars(q.order_by(Medico.apellidos, Medico.nombres))]


def _medico_tiene_actividad(s: Session, medico_id: int) -> bool:
    """Consultas atendidas, historico, informes o remisiones impiden el borrado físico."""
    chequeos = [
        select(Consulta.id).where(
            Consulta.medico_id == medico_id,
            Consulta.estado_consulta.in_([EstadoConsulta.COMPLETADA, EstadoConsulta.FINALIZADA]),
        ),
        select(Historico.id).where(Historico.medico_id == medico_id),
        select(InformeMedico.id).where(InformeMedico.medico_id == medico_id),
        select(Remision.id).where(
            or_(Remision.medico_remitente_id == medico_id, Remision.medico_remitido_id == medico_id)
        ),
    ]
    return any(s.execute(q.limit(1)).first() is not None for q in chequeos)


def elimina_medico(medico_id: int) -> dict[str, Any]:
    """
    Con actividad clínica: se desactiva el médico y su usuario (borrado lógico).
    Sin actividad: se elimina junto con sus consultas pendientes, plantillas y usuario.
    """
    from .auth_models import Usuario

    with db_session() as s:
        m = obtener_o_404(s, Medico, medico_id, "Médico no encontrado")

        if _medico_tiene_actividad(s, medico_id):
            m.activo = False
            s.execute(update(Usuario).where(Usuario.medico_id == medico_id).values(activo=False))
            logger.info("Médico %s desactivado (tiene actividad clínica)", medico_id)
            return {"medico_id": medico_id, "eliminado": "logico"}

        s.execute(delete(PlantillaHistoria).where(PlantillaHistoria.medico_id == medico_id))
        for u in s.scalars(select(Usuario).where(Usuario.medico_id == medico_id)):
            s.delete(u)
        s.delete(m)
        logger.info("Médico %s eliminado", medico_id)
        return {"medico_id": medico_id, "eliminado": "fisico"}


# =========================
# Servicios
# =========================
def _valida_servicio(datos: dict) -> dict:
    out = dict(datos)
    if "nombre_servicio" in out:
        out["nombre_servicio"] = (out["nombre_servicio"] or "").strip()
        if not out["nombre_servicio"]:
            raise DatosInvalidos("El nombre del servicio es requerido")
    if "monto_base" in out:
        monto = a_decimal(out["monto_base"], "monto_base")
        if monto <= 0:
            raise DatosInvalidos("El monto base debe ser mayor a 0")
        out["monto_base"] = monto
    if "moneda" in out:
        out["moneda"] = a_moneda(out["moneda"])
    return out


def _servicio_duplicado(s: Session, especialidad_id: int, nombre: str, excluir_id: int | None = None) -> bool:
    q = select(Servicio.id).where(
        Servicio.clinica_alias == CLINICA_ALIAS,
        Servicio.especialidad_id == especialidad_id,
        func.lower(Servicio.nombre_servicio) == nombre.lower(),
    )
    if excluir_id is not None:
        q = q.where(Servicio.id != excluir_id)
    return s.execute(q.limit(1)).first() is not None


def crea_servicio(
    nombre_servicio: str,
    especialidad_id: int,
    monto_base: Any,
    moneda: str = "USD",
    descripcion: str | None = None,
    activo: bool = True,
) -> dict:
    if especialidad_id is None or monto_base is None:
        raise DatosInvalidos("nombre_servicio, especialidad_id, monto_base y moneda son requeridos")
    datos = _valida_servicio(
        {"nombre_servicio": nombre_servicio, "monto_base": monto_base, "moneda": moneda}
    )
    with db_session() as s:
        obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada")
        if _servicio_duplicado(s, especialidad_id, datos["nombre_servicio"]):
            raise Conflicto("Ya existe un servicio con ese nombre para esta especialidad")
        sv = Servicio(
            especialidad_id=especialidad_id,
            descripcion=descripcion,
            activo=activo,
            clinica_alias=CLINICA_ALIAS,
            **datos,
        )
        s.add(sv)
        s.flush()
        return servicio_dict(sv)


def actualiza_servicio(servicio_id: int, datos: dict) -> dict:
    datos = _valida_servicio(
        {k: v for k, v in datos.items() if k in {"nombre_servicio", "especialidad_id", "monto_base", "moneda", "descripcion", "activo"}}
    )
    with db_session() as s:
        sv = obtener_o_404(s, Servicio, servicio_id, "Servicio no encontrado")
        especialidad_id = datos.get("especialidad_id", sv.especialidad_id)
        nombre = datos.get("nombre_servicio", sv.nombre_servicio)
        if "especialidad_id" in datos:
            obtener_o_404(s, Especialidad, especialidad_id, "Especialidad no encontrada")
        if _servicio_duplicado(s, especialidad_id, nombre, excluir_id=sv.id):
            raise Conflicto("Ya existe un servicio con ese nombre para esta especialidad")
        _aplica(sv, datos, set(datos))
        s.flush()
        return servicio_dict(sv)


def elimina_servicio(servicio_id: int) -> None:
    with db_session() as s:
        sv = obtener_o_404(s, Servicio, servicio_id, "Servicio no encontrado")
        en_uso = s.execute(
            select(ServicioConsulta.id).where(ServicioConsulta.servicio_id == servicio_id).limit(1)
        ).first()
        if en_uso:
            raise DatosInvalidos("No se puede eliminar un servicio que está siendo usado en consultas")
        s.delete(sv)


def get_servicio_flat(servicio_id: int) -> dict:
    with db_session() as s:
        sv = obtener_o_404(s, Servicio, servicio_id, "Servicio no encontrado")
        out = servicio_dict(sv)
        out["especialidad"] = especialidad_dict(sv.especialidad)
        return out


def lista_servicios_flat(especialidad_id: int | None = None, activo: bool | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Servicio).where(Servicio.clinica_alias == CLINICA_ALIAS)
        if especialidad_id is not None:
            q = q.where(Servicio.especialidad_id == especialidad_id)
        if activo is not None:
            q = q.where(Servicio.activo.is_(activo))
        out = []
        for sv in s.scalars(q.order_by(Servicio.nombre_servicio)):
            d = servicio_dict(sv)
            d["especialidad"] = especialidad_dict(sv.especialidad)
            out.append(d)
        return out


def servicios_por_especialidad(especialidad_id: int) -> list[dict]:
    return lista_servicios_flat(especialidad_id=especialidad_id, activo=True)


# =========================
# Tipo de cambio
# =========================
def registra_tipo_cambio(usd_to_ves: Any, fecha: date | None = None) -> dict:
    """Registra la tasa del día; la anterior del mismo día queda inactiva."""
    tasa = a_decimal(usd_to_ves, "usd_to_ves")
    if tasa <= 0:
        raise DatosInvalidos("La tasa debe ser mayor a 0")
    fecha = fecha or hoy()
    with db_session() as s:
        s.execute(update(TipoCambio).where(TipoCambio.fecha == fecha).values(activo=False))
        tc = TipoCambio(fecha=fecha, usd_to_ves=tasa, activo=True)
        s.add(tc)
        s.flush()
        return {"id": tc.id, "fecha": tc.fecha.isoformat(), "usd_to_ves": num(tc.usd_to_ves), "activo": True}


def tasa_del_dia(s: Session, fecha: date | None = None) -> Decimal:
    """Tasa USD->VES activa del día o el valor por defecto."""
    tasa = s.execute(
        select(TipoCambio.usd_to_ves)
        .where(TipoCambio.fecha == (fecha or hoy()), TipoCambio.activo.is_(True))
        .order_by(TipoCambio.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return tasa if tasa is not None else TIPO_CAMBIO_DEFAULT


def tipo_cambio_actual() -> dict:
    with db_session() as s:
        return {"fecha": hoy().isoformat(), "usd_to_ves": num(tasa_del_dia(s))}
