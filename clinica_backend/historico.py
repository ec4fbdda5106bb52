from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .config import CLINICA_ALIAS
from .consultas import a_fecha, marcar_completada_por_historico
from .db import db_session
from .errors import DatosInvalidos, NoEncontrado
from .models import Consulta, Historico, Medico, Paciente, PlantillaHistoria
from .services import obtener_o_404
from .tiempo import hoy

logger = logging.getLogger(__name__)

CAMPOS_ACTUALIZABLES = ("motivo_consulta", "diagnostico", "conclusiones", "plan")


def historico_dict(h: Historico) -> dict:
    medico = h.medico
    especialidad = medico.especialidad if medico else None
    return {
        "id": h.id,
        "paciente_id": h.paciente_id,
        "medico_id": h.medico_id,
        "consulta_id": h.consulta_id,
        "motivo_consulta": h.motivo_consulta,
        "diagnostico": h.diagnostico,
        "conclusiones": h.conclusiones,
        "plan": h.plan,
        "fecha_consulta": h.fecha_consulta.isoformat(),
        "nombre_archivo": h.nombre_archivo,
        "fecha_creacion": h.fecha_creacion.isoformat() if h.fecha_creacion else None,
        "fecha_actualizacion": h.fecha_actualizacion.isoformat() if h.fecha_actualizacion else None,
        "paciente_nombre": h.paciente.nombre_completo if h.paciente else None,
        "medico_nombre": medico.nombres if medico else None,
        "medico_apellidos": medico.apellidos if medico else None,
        "especialidad_id": especialidad.id if especialidad else None,
        "especialidad_nombre": especialidad.nombre_especialidad if especialidad else None,
    }


def _base_query():
    return (
        select(Historico)
        .options(
            joinedload(Historico.paciente),
            joinedload(Historico.medico).joinedload(Medico.especialidad),
        )
        .where(Historico.clinica_alias == CLINICA_ALIAS)
        .order_by(Historico.fecha_consulta.desc(), Historico.id.desc())
    )


def _lista(q) -> list[dict]:
    with db_session() as s:
        return [historico_dict(h) for h in s.scalars(q).unique()]


# =========================
# Alta / modificación
# =========================
def crea_historico(datos: dict) -> dict:
    """
    Registra una entrada de historia clínica y pasa la consulta atendida a "completada".
    """
    if not datos.get("paciente_id") or not datos.get("motivo_consulta"):
        raise DatosInvalidos("paciente_id y motivo_consulta son requeridos")
    if not datos.get("medico_id"):
        raise DatosInvalidos("medico_id es requerido")

    with db_session() as s:
        paciente = obtener_o_404(s, Paciente, int(datos["paciente_id"]), "Paciente no encontrado")
        medico = obtener_o_404(s, Medico, int(datos["medico_id"]), "Médico no encontrado")
        consulta_id = None
        if datos.get("consulta_id"):
            consulta = obtener_o_404(s, Consulta, int(datos["consulta_id"]), "Consulta no encontrada")
            if consulta.paciente_id != paciente.id:
                raise DatosInvalidos("La consulta indicada no pertenece al paciente")
            consulta_id = consulta.id
        h = Historico(
            paciente_id=paciente.id,
            medico_id=medico.id,
            consulta_id=consulta_id,
            motivo_consulta=str(datos["motivo_consulta"]).strip(),
            diagnostico=datos.get("diagnostico"),
            conclusiones=datos.get("conclusiones"),
            plan=datos.get("plan"),
            fecha_consulta=a_fecha(datos["fecha_consulta"], "fecha_consulta") if datos.get("fecha_consulta") else hoy(),
            nombre_archivo=datos.get("nombre_archivo"),
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(h)
        s.flush()
        historico_id = h.id
        logger.info("Historico %s creado para paciente %s", historico_id, paciente.id)

    consulta_id = marcar_completada_por_historico(h.paciente_id, h.medico_id, h.consulta_id)
    if consulta_id and not h.consulta_id:
        with db_session() as s:
            s.get(Historico, historico_id).consulta_id = consulta_id
    return get_historico(historico_id)


def actualiza_historico(historico_id: int, datos: dict) -> dict:
    cambios = {k: datos[k] for k in CAMPOS_ACTUALIZABLES if datos.get(k) is not None}
    if not cambios:
        raise DatosInvalidos(
            "No hay campos para actualizar. Debe proporcionar al menos uno de los siguientes campos: "
            + ", ".join(CAMPOS_ACTUALIZABLES)
        )
    with db_session() as s:
        h = s.get(Historico, historico_id)
        if h is None or h.clinica_alias != CLINICA_ALIAS:
            raise NoEncontrado(f"No se encontró historia médica con ID {historico_id}")
        for k, v in cambios.items():
            setattr(h, k, v)
        paciente_id, medico_id, consulta_id = h.paciente_id, h.medico_id, h.consulta_id

    marcar_completada_por_historico(paciente_id, medico_id, consulta_id)
    return get_historico(historico_id)


def elimina_historico(historico_id: int) -> None:
    with db_session() as s:
        h = s.get(Historico, historico_id)
        if h is None or h.clinica_alias != CLINICA_ALIAS:
            raise NoEncontrado(f"No se encontró historia médica con ID {historico_id}")
        s.delete(h)


# =========================
# Consultas
# =========================
def get_historico(historico_id: int) -> dict:
    with db_session() as s:
        h = s.scalars(_base_query().where(Historico.id == historico_id)).unique().first()
        if h is None:
            raise NoEncontrado(f"No se encontró historia médica con ID {historico_id}")
        return historico_dict(h)


def historico_por_paciente(paciente_id: int) -> list[dict]:
    return _lista(_base_query().where(Historico.paciente_id == paciente_id))


def historico_por_medico(medico_id: int) -> list[dict]:
    return _lista(_base_query().where(Historico.medico_id == medico_id))


def historico_completo() -> list[dict]:
    return _lista(_base_query())


def historico_filtrado(paciente_id: int | None = None, medico_id: int | None = None) -> list[dict]:
    q = _base_query()
    if paciente_id:
        q = q.where(Historico.paciente_id == paciente_id)
    if medico_id:
        q = q.where(Historico.medico_id == medico_id)
    return _lista(q)


def ultimo_historico_paciente(paciente_id: int) -> dict | None:
    items = _lista(_base_query().where(Historico.paciente_id == paciente_id).limit(1))
    return items[0] if items else None


def historico_paciente_medico(paciente_id: int, medico_id: int) -> dict | None:
    items = _lista(
        _base_query().where(Historico.paciente_id == paciente_id, Historico.medico_id == medico_id).limit(1)
    )
    return items[0] if items else None


def medicos_con_historia(paciente_id: int) -> list[dict[str, Any]]:
    """Médicos que han registrado historia para el paciente, con la fecha más reciente."""
    vistos: dict[int, dict] = {}
    for h in historico_por_paciente(paciente_id):
        if h["medico_id"] not in vistos:
            vistos[h["medico_id"]] = {
                "medico_id": h["medico_id"],
                "nombres": h["medico_nombre"],
                "apellidos": h["medico_apellidos"],
                "especialidad_id": h["especialidad_id"],
                "especialidad_nombre": h["especialidad_nombre"],
                "ultima_consulta": h["fecha_consulta"],
            }
    return list(vistos.values())


def tiene_historia_por_especialidad(paciente_id: int, especialidad_id: int) -> bool:
    with db_session() as s:
        return s.scalars(
            select(Historico.id)
            .join(Medico, Medico.id == Historico.medico_id)
            .where(
                Historico.clinica_alias == CLINICA_ALIAS,
                Historico.paciente_id == paciente_id,
                Medico.especialidad_id == especialidad_id,
            )
            .limit(1)
        ).first() is not None


# =========================
# Plantillas de historia
# =========================
CAMPOS_PLANTILLA = (
    "nombre",
    "descripcion",
    "motivo_consulta_template",
    "diagnostico_template",
    "conclusiones_template",
    "plan_template",
    "activo",
)


def plantilla_dict(p: PlantillaHistoria) -> dict:
    return {
        "id": p.id,
        "medico_id": p.medico_id,
        "nombre": p.nombre,
        "descripcion": p.descripcion,
        "motivo_consulta_template": p.motivo_consulta_template,
        "diagnostico_template": p.diagnostico_template,
        "conclusiones_template": p.conclusiones_template,
        "plan_template": p.plan_template,
        "activo": p.activo,
        "fecha_creacion": p.fecha_creacion.isoformat() if p.fecha_creacion else None,
        "fecha_actualizacion": p.fecha_actualizacion.isoformat() if p.fecha_actualizacion else None,
    }


def _plantilla_del_medico(s: Session, plantilla_id: int, medico_id: int) -> PlantillaHistoria:
    """Cada médico solo ve y modifica sus propias plantillas."""
    p = s.scalars(
        select(PlantillaHistoria).where(
            PlantillaHistoria.id == plantilla_id,
            PlantillaHistoria.medico_id == medico_id,
            PlantillaHistoria.clinica_alias == CLINICA_ALIAS,
        )
    ).first()
    if p is None:
        raise NoEncontrado("Plantilla no encontrada")
    return p


def lista_plantillas(medico_id: int, solo_activas: bool = True) -> list[dict]:
    q = select(PlantillaHistoria).where(
        PlantillaHistoria.medico_id == medico_id,
        PlantillaHistoria.clinica_alias == CLINICA_ALIAS,
    )
    if solo_activas:
        q = q.where(PlantillaHistoria.activo.is_(True))
    with db_session() as s:
        return [plantilla_dict(p) for p in s.scalars(q.order_by(PlantillaHistoria.nombre))]


def get_plantilla(plantilla_id: int, medico_id: int) -> dict:
    with db_session() as s:
        return plantilla_dict(_plantilla_del_medico(s, plantilla_id, medico_id))


def crea_plantilla(medico_id: int, datos: dict) -> dict:
    nombre = (datos.get("nombre") or "").strip()
    if not nombre:
        raise DatosInvalidos("El nombre de la plantilla es requerido")

    with db_session() as s:
        medico = obtener_o_404(s, Medico, int(medico_id), "Médico no encontrado")
        p = PlantillaHistoria(
            medico_id=medico.id,
            nombre=nombre,
            descripcion=datos.get("descripcion") or None,
            motivo_consulta_template=datos.get("motivo_consulta_template") or None,
            diagnostico_template=datos.get("diagnostico_template") or None,
            conclusiones_template=datos.get("conclusiones_template") or None,
            plan_template=datos.get("plan_template") or None,
            activo=datos.get("activo") if datos.get("activo") is not None else True,
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(p)
        s.flush()
        logger.info("Plantilla %s creada por médico %s", p.id, medico.id)
        return plantilla_dict(p)


def actualiza_plantilla(plantilla_id: int, medico_id: int, datos: dict) -> dict:
    cambios = {k: datos[k] for k in CAMPOS_PLANTILLA if datos.get(k) is not None}
    if not cambios:
        raise DatosInvalidos("No hay campos para actualizar")
    if "nombre" in cambios:
        cambios["nombre"] = str(cambios["nombre"]).strip()
        if not cambios["nombre"]:
            raise DatosInvalidos("El nombre de la plantilla es requerido")

    with db_session() as s:
        p = _plantilla_del_medico(s, plantilla_id, medico_id)
        for k, v in cambios.items():
            setattr(p, k, v)
        s.flush()
        return plantilla_dict(p)


def elimina_plantilla(plantilla_id: int, medico_id: int) -> None:
    """Borrado lógico: la plantilla deja de listarse pero se conserva."""
    with db_session() as s:
        _plantilla_del_medico(s, plantilla_id, medico_id).activo = False
        logger.info("Plantilla %s desactivada", plantilla_id)
