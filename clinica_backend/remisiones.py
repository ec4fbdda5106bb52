"""
Remisiones entre médicos.

Crear una remisión agenda en la misma transacción una consulta de
seguimiento "por agendar" con el médico remitido.
"""
from __future__ import annotations

import logging
from datetime import time

from sqlalchemy import func, or_, select
from sqlalchemy.orm import joinedload

from .config import CLINICA_ALIAS
from .db import db_session
from .errors import DatosInvalidos, NoEncontrado
from .models import Consulta, EstadoConsulta, EstadoRemision, Medico, Paciente, Remision, TipoConsulta
from .services import obtener_o_404
from .tiempo import ahora, hoy

logger = logging.getLogger(__name__)

MIN_MOTIVO = 5
TIPOS_MEDICO = ("remitente", "remitido")


def _estado(valor: str | EstadoRemision) -> EstadoRemision:
    if isinstance(valor, EstadoRemision):
        return valor
    try:
        return EstadoRemision(str(valor).strip().capitalize())
    except ValueError:
        validos = ", ".join(e.value for e in EstadoRemision)
        raise DatosInvalidos(f"Estado de remisión no válido. Valores permitidos: {validos}") from None


def _medico_resumen(m: Medico | None) -> dict | None:
    if m is None:
        return None
    return {
        "id": m.id,
        "nombres": m.nombres,
        "apellidos": m.apellidos,
        "especialidad": m.especialidad.nombre_especialidad if m.especialidad else None,
    }


def remision_dict(r: Remision) -> dict:
    return {
        "id": r.id,
        "paciente_id": r.paciente_id,
        "medico_remitente_id": r.medico_remitente_id,
        "medico_remitido_id": r.medico_remitido_id,
        "consulta_id": r.consulta_id,
        "motivo_remision": r.motivo_remision,
        "observaciones": r.observaciones,
        "estado_remision": r.estado_remision.value,
        "fecha_remision": r.fecha_remision.isoformat() if r.fecha_remision else None,
        "fecha_respuesta": r.fecha_respuesta.isoformat() if r.fecha_respuesta else None,
        "paciente": {
            "id": r.paciente.id,
            "nombres": r.paciente.nombres,
            "apellidos": r.paciente.apellidos,
            "cedula": r.paciente.cedula,
        } if r.paciente else None,
        "medico_remitente": _medico_resumen(r.medico_remitente),
        "medico_remitido": _medico_resumen(r.medico_remitido),
    }


def _base_query():
    return (
        select(Remision)
        .options(
            joinedload(Remision.paciente),
            joinedload(Remision.medico_remitente).joinedload(Medico.especialidad),
            joinedload(Remision.medico_remitido).joinedload(Medico.especialidad),
        )
        .where(Remision.clinica_alias == CLINICA_ALIAS)
        .order_by(Remision.fecha_remision.desc(), Remision.id.desc())
    )


def _lista(q) -> list[dict]:
    with db_session() as s:
        return [remision_dict(r) for r in s.scalars(q).unique()]


def crea_remision(datos: dict) -> dict:
    requeridos = ("paciente_id", "medico_remitente_id", "medico_remitido_id", "motivo_remision")
    if any(not datos.get(c) for c in requeridos):
        raise DatosInvalidos(f"Campos requeridos: {', '.join(requeridos)}")
    remitente_id = int(datos["medico_remitente_id"])
    remitido_id = int(datos["medico_remitido_id"])
    if remitente_id == remitido_id:
        raise DatosInvalidos("No se puede remitir al paciente al mismo médico")
    motivo = str(datos["motivo_remision"]).strip()
    if len(motivo) < MIN_MOTIVO:
        raise DatosInvalidos(f"El motivo de remisión debe tener al menos {MIN_MOTIVO} caracteres")

    with db_session() as s:
        paciente = obtener_o_404(s, Paciente, int(datos["paciente_id"]), "Paciente no encontrado")
        obtener_o_404(s, Medico, remitente_id, "Médico remitente no encontrado")
        remitido = obtener_o_404(s, Medico, remitido_id, "Médico remitido no encontrado")

        # La fecha real la fija luego el reagendamiento (por_agendar -> agendada)
        consulta = Consulta(
            paciente_id=paciente.id,
            medico_id=remitido.id,
            motivo_consulta=f"Remisión: {motivo}",
            tipo_consulta=TipoConsulta.SEGUIMIENTO,
            fecha_pautada=hoy(),
            hora_pautada=time(0, 0),
            estado_consulta=EstadoConsulta.POR_AGENDAR,
            observaciones=datos.get("observaciones"),
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(consulta)
        s.flush()

        r = Remision(
            paciente_id=paciente.id,
            medico_remitente_id=remitente_id,
            medico_remitido_id=remitido_id,
            consulta_id=consulta.id,
            motivo_remision=motivo,
            observaciones=datos.get("observaciones"),
            estado_remision=EstadoRemision.PENDIENTE,
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(r)
        s.flush()
        remision_id = r.id
        logger.info("Remisión %s creada con consulta de seguimiento %s", remision_id, consulta.id)

    return get_remision(remision_id)


def actualiza_estado_remision(remision_id: int, estado: str, observaciones: str | None = None) -> dict:
    nuevo = _estado(estado)
    with db_session() as s:
        r = s.get(Remision, remision_id)
        if r is None or r.clinica_alias != CLINICA_ALIAS:
            raise NoEncontrado("Remisión no encontrada")
        r.estado_remision = nuevo
        if observaciones is not None:
            r.observaciones = observaciones
        r.fecha_respuesta = ahora() if nuevo != EstadoRemision.PENDIENTE else None
    return get_remision(remision_id)


def get_remision(remision_id: int) -> dict:
    with db_session() as s:
        r = s.scalars(_base_query().where(Remision.id == remision_id)).unique().first()
        if r is None:
            raise NoEncontrado("Remisión no encontrada")
        return remision_dict(r)


def lista_remisiones() -> list[dict]:
    return _lista(_base_query())


def remisiones_por_medico(medico_id: int, tipo: str | None = None) -> list[dict]:
    """tipo: remitente (enviadas), remitido (recibidas) o None para ambas."""
    if tipo is not None and tipo not in TIPOS_MEDICO:
        raise DatosInvalidos('El tipo debe ser "remitente" o "remitido"')
    if tipo == "remitente":
        cond = Remision.medico_remitente_id == medico_id
    elif tipo == "remitido":
        cond = Remision.medico_remitido_id == medico_id
    else:
        cond = or_(Remision.medico_remitente_id == medico_id, Remision.medico_remitido_id == medico_id)
    return _lista(_base_query().where(cond))


def remisiones_por_paciente(paciente_id: int) -> list[dict]:
    return _lista(_base_query().where(Remision.paciente_id == paciente_id))


def remisiones_por_estado(estado: str) -> list[dict]:
    return _lista(_base_query().where(Remision.estado_remision == _estado(estado)))


def estadisticas_remisiones() -> dict:
    with db_session() as s:
        rows = s.execute(
            select(Remision.estado_remision, func.count(Remision.id))
            .where(Remision.clinica_alias == CLINICA_ALIAS)
            .group_by(Remision.estado_remision)
        ).all()
    por_estado = {e.value: 0 for e in EstadoRemision}
    for estado, total in rows:
        por_estado[estado.value] = total
    return {
        "total": sum(por_estado.values()),
        "pendientes": por_estado[EstadoRemision.PENDIENTE.value],
        "aceptadas": por_estado[EstadoRemision.ACEPTADA.value],
        "rechazadas": por_estado[EstadoRemision.RECHAZADA.value],
        "completadas": por_estado[EstadoRemision.COMPLETADA.value],
    }
