"""
Ciclo de vida de las consultas y liquidación (finalización con servicios).

Estados: agendada -> en_progreso / completada -> finalizada, con las ramas
cancelada, reagendada, por_agendar y no_asistio. La finalización solo parte
de "completada" y es la única vía para llegar a "finalizada".
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from .auth_models import RolUsuario, Usuario
from .config import CLINICA_ALIAS
from .db import db_session
from .errors import DatosInvalidos, NoEncontrado, PermisoDenegado
from .models import (
    Consulta,
    Especialidad,
    EstadoConsulta,
    Historico,
    Medico,
    Moneda,
    Paciente,
    Prioridad,
    Remision,
    Servicio,
    ServicioConsulta,
    TipoConsulta,
)
from .notificaciones import (
    datos_consulta_email,
    notifica_consulta_agendada,
    notifica_consulta_cancelada,
    notifica_consulta_finalizada,
    notifica_consulta_reagendada,
)
from .services import a_decimal, a_moneda, num, obtener_o_404, servicio_dict, tasa_del_dia
from .tiempo import ahora, hoy

logger = logging.getLogger(__name__)

E = EstadoConsulta

# Estados en los que una consulta sigue "abierta" (aún no atendida)
ESTADOS_ABIERTOS = (E.AGENDADA, E.REAGENDADA, E.EN_PROGRESO, E.POR_AGENDAR)
ESTADOS_DEL_DIA = (E.AGENDADA, E.REAGENDADA, E.EN_PROGRESO, E.POR_AGENDAR, E.COMPLETADA)
ESTADOS_PENDIENTES = (E.AGENDADA, E.REAGENDADA, E.POR_AGENDAR)
ESTADOS_CANCELABLES = (E.AGENDADA, E.REAGENDADA)
ESTADOS_REAGENDABLES = (E.AGENDADA, E.REAGENDADA, E.POR_AGENDAR)

TRANSICIONES: dict[EstadoConsulta, frozenset[EstadoConsulta]] = {
    E.AGENDADA: frozenset({E.EN_PROGRESO, E.COMPLETADA, E.CANCELADA, E.REAGENDADA, E.NO_ASISTIO}),
    E.REAGENDADA: frozenset({E.EN_PROGRESO, E.COMPLETADA, E.CANCELADA, E.REAGENDADA, E.NO_ASISTIO}),
    E.POR_AGENDAR: frozenset({E.AGENDADA, E.COMPLETADA}),
    E.EN_PROGRESO: frozenset({E.COMPLETADA}),
    E.COMPLETADA: frozenset({E.FINALIZADA}),
    E.FINALIZADA: frozenset(),
    E.CANCELADA: frozenset(),
    E.NO_ASISTIO: frozenset(),
}

ROLES_FINALIZAN = (RolUsuario.SECRETARIA, RolUsuario.ADMINISTRADOR)
ROLES_COMPLETAN = (RolUsuario.MEDICO, RolUsuario.ADMINISTRADOR)

NOMBRE_SERVICIO_PREDETERMINADO = "Consulta"
MONEDAS_PAGO = (Moneda.USD.value, Moneda.VES.value)
MONTO_SERVICIO_PREDETERMINADO = Decimal("80")

CAMPOS_ACTUALIZABLES = {
    "motivo_consulta", "tipo_consulta", "fecha_pautada", "hora_pautada", "duracion_estimada",
    "prioridad", "observaciones", "notas_internas", "medico_id", "estado_consulta", "recordatorio_enviado",
}


def puede_transicionar(origen: EstadoConsulta, destino: EstadoConsulta) -> bool:
    return destino in TRANSICIONES.get(origen, frozenset())


# =========================
# Conversión de entrada
# =========================
def a_fecha(valor: Any, campo: str = "fecha_pautada") -> date:
    if isinstance(valor, datetime):
        return valor.date()
    if isinstance(valor, date):
        return valor
    try:
        return date.fromisoformat(str(valor)[:10])
    except ValueError:
        raise DatosInvalidos(f"{campo} debe tener formato YYYY-MM-DD") from None


def a_hora(valor: Any, campo: str = "hora_pautada") -> time:
    if isinstance(valor, time):
        return valor
    try:
        return time.fromisoformat(str(valor))
    except ValueError:
        raise DatosInvalidos(f"{campo} debe tener formato HH:MM") from None


def _a_enum(enum_cls, valor: Any, campo: str):
    if isinstance(valor, enum_cls):
        return valor
    try:
        return enum_cls(str(valor))
    except ValueError:
        validos = ", ".join(m.value for m in enum_cls)
        raise DatosInvalidos(f"{campo} no válido. Valores permitidos: {validos}") from None


def a_estado(valor: Any) -> EstadoConsulta:
    return _a_enum(EstadoConsulta, valor, "estado_consulta")


def _usuario_id(usuario: Usuario | None) -> int | None:
    return usuario.id if usuario is not None else None


# =========================
# Serialización
# =========================
def consulta_dict(c: Consulta) -> dict:
    medico = c.medico
    paciente = c.paciente
    especialidad = medico.especialidad if medico else None
    return {
        "id": c.id,
        "paciente_id": c.paciente_id,
        "medico_id": c.medico_id,
        "motivo_consulta": c.motivo_consulta,
        "tipo_consulta": c.tipo_consulta.value,
        "fecha_pautada": c.fecha_pautada.isoformat(),
        "hora_pautada": c.hora_pautada.strftime("%H:%M"),
        "duracion_estimada": c.duracion_estimada,
        "estado_consulta": c.estado_consulta.value,
        "prioridad": c.prioridad.value,
        "observaciones": c.observaciones,
        "notas_internas": c.notas_internas,
        "recordatorio_enviado": c.recordatorio_enviado,
        "fecha_culminacion": c.fecha_culminacion.isoformat() if c.fecha_culminacion else None,
        "motivo_cancelacion": c.motivo_cancelacion,
        "fecha_cancelacion": c.fecha_cancelacion.isoformat() if c.fecha_cancelacion else None,
        "cancelado_por": c.cancelado_por,
        "actualizado_por": c.actualizado_por,
        "fecha_pago": c.fecha_pago.isoformat() if c.fecha_pago else None,
        "metodo_pago": c.metodo_pago,
        "observaciones_financieras": c.observaciones_financieras,
        "fecha_creacion": c.fecha_creacion.isoformat() if c.fecha_creacion else None,
        "paciente": {
            "id": paciente.id,
            "nombres": paciente.nombres,
            "apellidos": paciente.apellidos,
            "cedula": paciente.cedula,
            "email": paciente.email,
            "telefono": paciente.telefono,
        } if paciente else None,
        "medico": {
            "id": medico.id,
            "nombres": medico.nombres,
            "apellidos": medico.apellidos,
            "email": medico.email,
            "especialidad_id": medico.especialidad_id,
            "especialidad": {
                "id": especialidad.id,
                "nombre_especialidad": especialidad.nombre_especialidad,
            } if especialidad else None,
        } if medico else None,
    }


def linea_dict(sc: ServicioConsulta) -> dict:
    return {
        "id": sc.id,
        "servicio_id": sc.servicio_id,
        "monto_pagado": num(sc.monto_pagado),
        "moneda_pago": sc.moneda_pago.value,
        "tipo_cambio": num(sc.tipo_cambio),
        "observaciones": sc.observaciones,
        "created_at": sc.created_at.isoformat() if sc.created_at else None,
        "servicio": servicio_dict(sc.servicio),
    }


def _base_query():
    return (
        select(Consulta)
        .options(
            joinedload(Consulta.paciente),
            joinedload(Consulta.medico).joinedload(Medico.especialidad),
        )
        .where(Consulta.clinica_alias == CLINICA_ALIAS)
    )


def _lista(s: Session, q) -> list[dict]:
    q = q.order_by(Consulta.fecha_pautada.desc(), Consulta.hora_pautada.desc())
    return [consulta_dict(c) for c in s.scalars(q).unique()]


# =========================
# Creación y consultas
# =========================
def crear_consulta(datos: dict, usuario: Usuario | None = None) -> dict:
    requeridos = ["paciente_id", "medico_id", "motivo_consulta", "fecha_pautada", "hora_pautada"]
    faltantes = [c for c in requeridos if datos.get(c) in (None, "")]
    if faltantes:
        raise DatosInvalidos(f"Campos requeridos: {', '.join(faltantes)}")

    fecha = a_fecha(datos["fecha_pautada"])
    if fecha < hoy():
        raise DatosInvalidos("La fecha de la consulta no puede ser anterior a hoy")

    with db_session() as s:
        paciente = obtener_o_404(s, Paciente, int(datos["paciente_id"]), "Paciente no encontrado")
        medico = obtener_o_404(s, Medico, int(datos["medico_id"]), "Médico no encontrado")
        if not medico.activo:
            raise DatosInvalidos("El médico no está activo")

        c = Consulta(
            paciente_id=paciente.id,
            medico_id=medico.id,
            motivo_consulta=str(datos["motivo_consulta"]).strip(),
            tipo_consulta=_a_enum(TipoConsulta, datos.get("tipo_consulta") or "primera_vez", "tipo_consulta"),
            fecha_pautada=fecha,
            hora_pautada=a_hora(datos["hora_pautada"]),
            duracion_estimada=int(datos.get("duracion_estimada") or 30),
            estado_consulta=E.AGENDADA,
            prioridad=_a_enum(Prioridad, datos.get("prioridad") or "normal", "prioridad"),
            observaciones=datos.get("observaciones"),
            notas_internas=datos.get("notas_internas"),
            recordatorio_enviado=False,
            actualizado_por=_usuario_id(usuario),
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(c)
        s.flush()
        s.refresh(c)
        out = consulta_dict(c)
        email = datos_consulta_email(c)
        logger.info("Consulta %s agendada para %s %s", c.id, c.fecha_pautada, c.hora_pautada)

    notifica_consulta_agendada(email)
    return out


def obtener_consultas(filtros: dict | None = None) -> dict:
    """
    Filtros: paciente_id, medico_id, estado, fecha_desde, fecha_hasta, prioridad,
    tipo_consulta, search, page, limit.
    """
    f = filtros or {}
    condiciones = [Consulta.clinica_alias == CLINICA_ALIAS]

    if f.get("paciente_id"):
        condiciones.append(Consulta.paciente_id == int(f["paciente_id"]))
    if f.get("medico_id"):
        condiciones.append(Consulta.medico_id == int(f["medico_id"]))
    if f.get("estado"):
        condiciones.append(Consulta.estado_consulta == a_estado(f["estado"]))
    if f.get("fecha_desde"):
        condiciones.append(Consulta.fecha_pautada >= a_fecha(f["fecha_desde"], "fecha_desde"))
    if f.get("fecha_hasta"):
        condiciones.append(Consulta.fecha_pautada <= a_fecha(f["fecha_hasta"], "fecha_hasta"))
    if f.get("prioridad"):
        condiciones.append(Consulta.prioridad == _a_enum(Prioridad, f["prioridad"], "prioridad"))
    if f.get("tipo_consulta"):
        condiciones.append(Consulta.tipo_consulta == _a_enum(TipoConsulta, f["tipo_consulta"], "tipo_consulta"))

    q = _base_query().where(*condiciones)
    conteo = select(func.count(Consulta.id)).where(*condiciones)
    if f.get("search"):
        q = _filtro_busqueda(q, f["search"])
        conteo = _filtro_busqueda(conteo, f["search"])

    page = max(int(f.get("page") or 1), 1)
    limit = max(int(f.get("limit") or 20), 1)

    with db_session() as s:
        total = s.execute(conteo).scalar_one()
        items = _lista(s, q.offset((page - 1) * limit).limit(limit))
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }


def _filtro_busqueda(q, texto: str):
    like = f"%{texto.strip()}%"
    return (
        q.join(Paciente, Paciente.id == Consulta.paciente_id)
        .join(Medico, Medico.id == Consulta.medico_id)
        .where(
            or_(
                Consulta.motivo_consulta.ilike(like),
                Paciente.nombres.ilike(like),
                Paciente.apellidos.ilike(like),
                Paciente.cedula.ilike(like),
                Medico.nombres.ilike(like),
                Medico.apellidos.ilike(like),
            )
        )
    )


def obtener_consulta(consulta_id: int) -> dict:
    with db_session() as s:
        c = s.scalars(_base_query().where(Consulta.id == consulta_id)).unique().first()
        if c is None:
            raise NoEncontrado("Consulta no encontrada")
        return consulta_dict(c)


def consultas_por_paciente(paciente_id: int) -> list[dict]:
    with db_session() as s:
        return _lista(s, _base_query().where(Consulta.paciente_id == paciente_id))


def consultas_por_medico(medico_id: int) -> list[dict]:
    with db_session() as s:
        return _lista(s, _base_query().where(Consulta.medico_id == medico_id))


def consultas_hoy() -> list[dict]:
    with db_session() as s:
        return _lista(s, _base_query().where(Consulta.fecha_pautada == hoy()))


def consultas_del_dia(usuario: Usuario | None = None) -> list[dict]:
    """Agenda del día; un médico solo ve sus propias consultas."""
    q = _base_query().where(Consulta.fecha_pautada == hoy(), Consulta.estado_consulta.in_(ESTADOS_DEL_DIA))
    if usuario is not None and usuario.rol == RolUsuario.MEDICO:
        q = q.where(Consulta.medico_id == usuario.medico_id)
    with db_session() as s:
        return [
            consulta_dict(c)
            for c in s.scalars(q.order_by(Consulta.hora_pautada.asc())).unique()
        ]


def consultas_pendientes() -> list[dict]:
    with db_session() as s:
        return _lista(s, _base_query().where(Consulta.estado_consulta.in_(ESTADOS_PENDIENTES)))


def buscar_consultas(texto: str) -> list[dict]:
    if not texto or not texto.strip():
        raise DatosInvalidos("El término de búsqueda es requerido")
    with db_session() as s:
        return _lista(s, _filtro_busqueda(_base_query(), texto))


# =========================
# Transiciones
# =========================
def _carga(s: Session, consulta_id: int) -> Consulta:
    return obtener_o_404(s, Consulta, consulta_id, "Consulta no encontrada")


def actualizar_consulta(consulta_id: int, datos: dict, usuario: Usuario | None = None) -> dict:
    datos = {k: v for k, v in datos.items() if k in CAMPOS_ACTUALIZABLES and v is not None}
    if not datos:
        raise DatosInvalidos("No hay campos válidos para actualizar")

    with db_session() as s:
        c = _carga(s, consulta_id)

        if "estado_consulta" in datos:
            destino = a_estado(datos.pop("estado_consulta"))
            if destino == E.FINALIZADA:
                raise DatosInvalidos("Use la finalización con servicios para finalizar una consulta")
            if destino == E.CANCELADA:
                raise DatosInvalidos("Use la cancelación indicando el motivo para cancelar una consulta")
            if destino != c.estado_consulta:
                if not puede_transicionar(c.estado_consulta, destino):
                    raise DatosInvalidos(
                        f"Transición no permitida: {c.estado_consulta.value} -> {destino.value}"
                    )
                c.estado_consulta = destino
                if destino == E.COMPLETADA:
                    c.fecha_culminacion = ahora()

        if "medico_id" in datos:
            c.medico_id = obtener_o_404(s, Medico, int(datos.pop("medico_id")), "Médico no encontrado").id
        if "fecha_pautada" in datos:
            c.fecha_pautada = a_fecha(datos.pop("fecha_pautada"))
        if "hora_pautada" in datos:
            c.hora_pautada = a_hora(datos.pop("hora_pautada"))
        if "tipo_consulta" in datos:
            c.tipo_consulta = _a_enum(TipoConsulta, datos.pop("tipo_consulta"), "tipo_consulta")
        if "prioridad" in datos:
            c.prioridad = _a_enum(Prioridad, datos.pop("prioridad"), "prioridad")
        for k, v in datos.items():
            setattr(c, k, v)

        c.actualizado_por = _usuario_id(usuario)
        s.flush()
        s.refresh(c)
        return consulta_dict(c)


def eliminar_consulta(consulta_id: int) -> None:
    with db_session() as s:
        c = _carga(s, consulta_id)
        if c.estado_consulta == E.FINALIZADA:
            raise DatosInvalidos("No se puede eliminar una consulta finalizada")
        # historicos y remisiones conservan su registro sin la consulta
        s.execute(update(Historico).where(Historico.consulta_id == c.id).values(consulta_id=None))
        s.execute(update(Remision).where(Remision.consulta_id == c.id).values(consulta_id=None))
        s.delete(c)
        logger.info("Consulta %s eliminada", consulta_id)


def cancelar_consulta(consulta_id: int, motivo_cancelacion: str | None, usuario: Usuario | None = None) -> dict:
    if not motivo_cancelacion or not motivo_cancelacion.strip():
        raise DatosInvalidos("El motivo de cancelación es requerido")

    with db_session() as s:
        c = _carga(s, consulta_id)
        if c.estado_consulta not in ESTADOS_CANCELABLES:
            raise DatosInvalidos('Solo se pueden cancelar consultas en estado "agendada" o "reagendada"')

        c.estado_consulta = E.CANCELADA
        c.motivo_cancelacion = motivo_cancelacion.strip()
        c.fecha_cancelacion = ahora()
        c.cancelado_por = _usuario_id(usuario)
        c.actualizado_por = _usuario_id(usuario)
        s.flush()
        out = consulta_dict(c)
        email = datos_consulta_email(c)
        logger.info("Consulta %s cancelada: %s", consulta_id, c.motivo_cancelacion)

    notifica_consulta_cancelada(email)
    return out


def reagendar_consulta(
    consulta_id: int,
    fecha_pautada: Any,
    hora_pautada: Any,
    usuario: Usuario | None = None,
) -> dict:
    if not fecha_pautada or not hora_pautada:
        raise DatosInvalidos("Nueva fecha y hora son requeridas")
    fecha = a_fecha(fecha_pautada)
    hora = a_hora(hora_pautada)
    if fecha < hoy():
        raise DatosInvalidos("La nueva fecha no puede ser anterior a hoy")

    with db_session() as s:
        c = _carga(s, consulta_id)
        if c.estado_consulta not in ESTADOS_REAGENDABLES:
            raise DatosInvalidos('Solo se pueden reagendar consultas en estado "agendada", "reagendada" o "por_agendar"')

        # Una consulta "por agendar" recibe por primera vez fecha y hora
        c.estado_consulta = E.AGENDADA if c.estado_consulta == E.POR_AGENDAR else E.REAGENDADA
        c.fecha_pautada = fecha
        c.hora_pautada = hora
        c.fecha_culminacion = None
        c.actualizado_por = _usuario_id(usuario)
        s.flush()
        out = consulta_dict(c)
        email = datos_consulta_email(c)

    notifica_consulta_reagendada(email)
    return out


def iniciar_consulta(consulta_id: int, usuario: Usuario | None = None) -> dict:
    with db_session() as s:
        c = _carga(s, consulta_id)
        if not puede_transicionar(c.estado_consulta, E.EN_PROGRESO):
            raise DatosInvalidos(f"No se puede iniciar una consulta en estado {c.estado_consulta.value}")
        c.estado_consulta = E.EN_PROGRESO
        c.actualizado_por = _usuario_id(usuario)
        s.flush()
        return consulta_dict(c)


def completar_consulta(consulta_id: int, usuario: Usuario | None = None) -> dict:
    with db_session() as s:
        c = _carga(s, consulta_id)
        if usuario is not None:
            if usuario.rol not in ROLES_COMPLETAN:
                raise PermisoDenegado("Solo el médico o el administrador pueden completar consultas")
            if usuario.rol == RolUsuario.MEDICO and usuario.medico_id != c.medico_id:
                raise PermisoDenegado("Solo puede completar sus propias consultas")
        if not puede_transicionar(c.estado_consulta, E.COMPLETADA):
            raise DatosInvalidos(f"No se puede completar una consulta en estado {c.estado_consulta.value}")
        c.estado_consulta = E.COMPLETADA
        c.fecha_culminacion = ahora()
        c.actualizado_por = _usuario_id(usuario)
        s.flush()
        return consulta_dict(c)


def marcar_completada_por_historico(paciente_id: int, medico_id: int, consulta_id: int | None = None) -> int | None:
    """
    Al registrar un historico la consulta atendida pasa a "completada".

    Busca la consulta indicada o la última abierta del paciente con ese médico,
    y si no hay, la última abierta del paciente con cualquier médico.
    No lanza: cualquier fallo queda en el log. Devuelve el id actualizado o None.
    """
    try:
        with db_session() as s:
            c: Consulta | None = None
            if consulta_id:
                c = s.scalars(
                    select(Consulta).where(
                        Consulta.id == consulta_id,
                        Consulta.clinica_alias == CLINICA_ALIAS,
                        Consulta.paciente_id == paciente_id,
                    )
                ).first()
            else:
                base = (
                    select(Consulta)
                    .where(
                        Consulta.clinica_alias == CLINICA_ALIAS,
                        Consulta.paciente_id == paciente_id,
                        Consulta.estado_consulta.in_(ESTADOS_ABIERTOS),
                    )
                    .order_by(Consulta.fecha_pautada.desc(), Consulta.hora_pautada.desc(), Consulta.id.desc())
                    .limit(1)
                )
                c = s.scalars(base.where(Consulta.medico_id == medico_id)).first()
                if c is None:
                    c = s.scalars(base).first()

            if c is None:
                logger.info("Sin consulta abierta para paciente %s; historico sin consulta asociada", paciente_id)
                return None
            if c.estado_consulta in (E.COMPLETADA, E.FINALIZADA):
                return c.id
            if c.estado_consulta not in ESTADOS_ABIERTOS:
                logger.info("Consulta %s en estado %s, no se marca completada", c.id, c.estado_consulta.value)
                return None

            c.estado_consulta = E.COMPLETADA
            c.fecha_culminacion = ahora()
            logger.info("Consulta %s marcada como completada por historico", c.id)
            return c.id
    except Exception:
        logger.exception("No se pudo marcar como completada la consulta del paciente %s", paciente_id)
        return None


# =========================
# Finalización / liquidación
# =========================
def _servicio_predeterminado(s: Session, especialidad_id: int, moneda: Any) -> Servicio:
    """Servicio "Consulta" activo de la especialidad; se crea si no existe."""
    sv = s.scalars(
        select(Servicio)
        .where(
            Servicio.clinica_alias == CLINICA_ALIAS,
            Servicio.nombre_servicio == NOMBRE_SERVICIO_PREDETERMINADO,
            Servicio.especialidad_id == especialidad_id,
            Servicio.activo.is_(True),
        )
        .limit(1)
    ).first()
    if sv is not None:
        return sv

    sv = Servicio(
        nombre_servicio=NOMBRE_SERVICIO_PREDETERMINADO,
        especialidad_id=especialidad_id,
        monto_base=MONTO_SERVICIO_PREDETERMINADO,
        moneda=a_moneda(moneda or "USD"),
        activo=True,
        clinica_alias=CLINICA_ALIAS,
    )
    s.add(sv)
    s.flush()
    logger.info("Servicio predeterminado 'Consulta' creado para especialidad %s", especialidad_id)
    return sv


def _totales(s: Session, consulta_id: int) -> dict:
    row = s.execute(
        select(
            func.count(ServicioConsulta.id),
            func.coalesce(func.sum(case((ServicioConsulta.moneda_pago == Moneda.USD, ServicioConsulta.monto_pagado), else_=0)), 0),
            func.coalesce(func.sum(case((ServicioConsulta.moneda_pago == Moneda.VES, ServicioConsulta.monto_pagado), else_=0)), 0),
        ).where(ServicioConsulta.consulta_id == consulta_id)
    ).one()
    return {"cantidad_servicios": int(row[0]), "total_usd": num(row[1]), "total_ves": num(row[2])}


def finalizar_consulta(
    consulta_id: int,
    servicios: list[dict] | None,
    usuario: Usuario | None = None,
    metodo_pago: str | None = None,
) -> dict:
    """
    Finaliza una consulta completada registrando los servicios cobrados.

    Todo ocurre en una sola transacción: si cualquier paso falla (servicio
    inválido, monto, moneda) se deshacen también los pasos previos, incluido
    el servicio "Consulta" creado al vuelo y el borrado de líneas anteriores.
    """
    if not servicios or not isinstance(servicios, list):
        raise DatosInvalidos("Debe seleccionar al menos un servicio")

    with db_session() as s:
        c = s.scalars(
            select(Consulta)
            .options(joinedload(Consulta.medico), joinedload(Consulta.paciente))
            .where(Consulta.id == consulta_id, Consulta.clinica_alias == CLINICA_ALIAS)
        ).first()
        if c is None:
            raise NoEncontrado("Consulta no encontrada")

        if usuario is not None and usuario.rol not in ROLES_FINALIZAN:
            raise PermisoDenegado("Solo secretaria y administrador pueden finalizar consultas")

        if c.estado_consulta == E.FINALIZADA:
            raise DatosInvalidos("La consulta ya está finalizada")
        if c.estado_consulta != E.COMPLETADA:
            raise DatosInvalidos('Solo se pueden finalizar consultas en estado "completada"')

        especialidad_id = c.medico.especialidad_id if c.medico else None
        if not especialidad_id:
            raise DatosInvalidos("No se pudo determinar la especialidad de la consulta")

        tasa = tasa_del_dia(s)

        # 1. resolver servicio predeterminado (-1 / 0); la moneda se valida antes de crearlo
        lineas: list[dict] = []
        for item in servicios:
            sid = item.get("servicio_id")
            if item.get("moneda") not in MONEDAS_PAGO:
                raise DatosInvalidos(f"La moneda para el servicio {sid} debe ser USD o VES")
            try:
                sid = int(sid)
            except (TypeError, ValueError):
                raise DatosInvalidos("Uno o más servicios seleccionados no son válidos") from None
            if sid in (-1, 0):
                sid = _servicio_predeterminado(s, especialidad_id, item["moneda"]).id
            lineas.append({**item, "servicio_id": sid})

        # 2. todos los servicios deben existir y estar activos
        ids = {ln["servicio_id"] for ln in lineas}
        validos = {
            sv.id: sv
            for sv in s.scalars(
                select(Servicio).where(
                    Servicio.id.in_(ids),
                    Servicio.activo.is_(True),
                    Servicio.clinica_alias == CLINICA_ALIAS,
                )
            )
        }
        if len(validos) != len(ids):
            raise DatosInvalidos("Uno o más servicios seleccionados no son válidos")

        # 3. montos
        for ln in lineas:
            monto = ln.get("monto_pagado")
            monto = a_decimal(monto, "monto_pagado") if monto not in (None, "") else Decimal("0")
            if monto <= 0:
                raise DatosInvalidos(f"El monto para el servicio {ln['servicio_id']} debe ser mayor a 0")
            ln["monto_pagado"] = monto
            ln["moneda"] = Moneda(ln["moneda"])

        # 4. reemplazar líneas existentes
        c.servicios_consulta.clear()
        s.flush()

        for ln in lineas:
            c.servicios_consulta.append(
                ServicioConsulta(
                    servicio_id=ln["servicio_id"],
                    monto_pagado=ln["monto_pagado"],
                    moneda_pago=ln["moneda"],
                    tipo_cambio=tasa,
                    observaciones=ln.get("observaciones") or None,
                )
            )

        # 5. estado y datos de pago
        momento = ahora()
        c.estado_consulta = E.FINALIZADA
        c.fecha_culminacion = momento
        c.fecha_pago = momento.date()
        c.metodo_pago = metodo_pago or "Efectivo"
        c.actualizado_por = _usuario_id(usuario)
        s.flush()

        totales = _totales(s, c.id)
        insertados = [linea_dict(sc) for sc in c.servicios_consulta]
        email = {**datos_consulta_email(c), **totales}
        logger.info(
            "Consulta %s finalizada: %s servicios, USD %.2f, VES %.2f",
            c.id, totales["cantidad_servicios"], totales["total_usd"], totales["total_ves"],
        )

    notifica_consulta_finalizada(email)
    return {
        "consulta_id": consulta_id,
        "servicios": insertados,
        "totales": totales,
        "mensaje": "Consulta finalizada exitosamente",
    }


def servicios_de_consulta(consulta_id: int) -> list[dict]:
    with db_session() as s:
        _carga(s, consulta_id)
        rows = s.scalars(
            select(ServicioConsulta)
            .options(joinedload(ServicioConsulta.servicio))
            .where(ServicioConsulta.consulta_id == consulta_id)
            .order_by(ServicioConsulta.created_at.asc(), ServicioConsulta.id.asc())
        )
        return [linea_dict(sc) for sc in rows]


def totales_consulta(consulta_id: int) -> dict:
    with db_session() as s:
        _carga(s, consulta_id)
        return _totales(s, consulta_id)


def detalle_finalizacion(consulta_id: int) -> dict:
    with db_session() as s:
        c = s.scalars(_base_query().where(Consulta.id == consulta_id)).unique().first()
        if c is None:
            raise NoEncontrado("Consulta no encontrada")
        base = consulta_dict(c)
        return {
            "consulta": {
                "id": c.id,
                "estado": c.estado_consulta.value,
                "fecha_consulta": c.fecha_pautada.isoformat(),
                "fecha_finalizacion": c.fecha_culminacion.isoformat() if c.fecha_culminacion else None,
                "observaciones": c.observaciones,
                "paciente": base["paciente"],
                "medico": base["medico"],
            },
            "servicios": [linea_dict(sc) for sc in c.servicios_consulta],
            "totales": _totales(s, c.id),
        }


# =========================
# Estadísticas
# =========================
def estadisticas_consultas() -> dict:
    with db_session() as s:
        por_estado = {e.value: 0 for e in EstadoConsulta}
        rows = s.execute(
            select(Consulta.estado_consulta, func.count(Consulta.id))
            .where(Consulta.clinica_alias == CLINICA_ALIAS)
            .group_by(Consulta.estado_consulta)
        ).all()
        for estado, total in rows:
            por_estado[estado.value] = total

        base = select(func.count(Consulta.id)).where(Consulta.clinica_alias == CLINICA_ALIAS)
        return {
            "total": sum(por_estado.values()),
            "por_estado": por_estado,
            "hoy": s.execute(base.where(Consulta.fecha_pautada == hoy())).scalar_one(),
            "futuras": s.execute(
                base.where(Consulta.fecha_pautada > hoy(), Consulta.estado_consulta.in_(ESTADOS_PENDIENTES))
            ).scalar_one(),
        }


def _rango(q, fecha_inicio: Any, fecha_fin: Any):
    condiciones = [Consulta.clinica_alias == CLINICA_ALIAS]
    if fecha_inicio:
        condiciones.append(Consulta.fecha_pautada >= a_fecha(fecha_inicio, "fecha_inicio"))
    if fecha_fin:
        condiciones.append(Consulta.fecha_pautada <= a_fecha(fecha_fin, "fecha_fin"))
    return q.where(and_(*condiciones))


def estadisticas_por_estado(fecha_inicio: Any = None, fecha_fin: Any = None) -> list[dict]:
    with db_session() as s:
        q = _rango(select(Consulta.estado_consulta, func.count(Consulta.id)), fecha_inicio, fecha_fin)
        rows = s.execute(q.group_by(Consulta.estado_consulta)).all()
        return sorted(({"estado": e.value, "total": t} for e, t in rows), key=lambda r: -r["total"])


def estadisticas_por_especialidad(fecha_inicio: Any = None, fecha_fin: Any = None) -> list[dict]:
    with db_session() as s:
        q = (
            select(
                Especialidad.id,
                func.coalesce(Especialidad.nombre_especialidad, "Sin especialidad"),
                func.count(Consulta.id),
            )
            .select_from(Consulta)
            .join(Medico, Medico.id == Consulta.medico_id)
            .outerjoin(Especialidad, Especialidad.id == Medico.especialidad_id)
        )
        rows = s.execute(
            _rango(q, fecha_inicio, fecha_fin).group_by(Especialidad.id, Especialidad.nombre_especialidad)
        ).all()
        return sorted(
            ({"especialidad_id": eid, "especialidad": nombre, "total": t} for eid, nombre, t in rows),
            key=lambda r: -r["total"],
        )


def estadisticas_por_medico(fecha_inicio: Any = None, fecha_fin: Any = None) -> list[dict]:
    with db_session() as s:
        q = (
            select(
                Medico.id,
                Medico.nombres,
                Medico.apellidos,
                func.count(Consulta.id),
                func.sum(case((Consulta.estado_consulta == E.FINALIZADA, 1), else_=0)),
                func.sum(case((Consulta.estado_consulta == E.CANCELADA, 1), else_=0)),
            )
            .select_from(Consulta)
            .join(Medico, Medico.id == Consulta.medico_id)
        )
        rows = s.execute(_rango(q, fecha_inicio, fecha_fin).group_by(Medico.id, Medico.nombres, Medico.apellidos)).all()
        return sorted(
            (
                {
                    "medico_id": mid,
                    "medico": f"{nombres} {apellidos}".strip(),
                    "total": total,
                    "finalizadas": int(fin or 0),
                    "canceladas": int(canc or 0),
                }
                for mid, nombres, apellidos, total, fin, canc in rows
            ),
            key=lambda r: -r["total"],
        )
