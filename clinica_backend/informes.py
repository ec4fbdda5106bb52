"""
Informes médicos: numeración por clínica, firma digital (sha256 del
contenido), envío por email con el PDF adjunto y estadísticas.
"""
from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload, selectinload

from . import reportes
from .auth_models import RolUsuario, Usuario
from .config import CLINICA_ALIAS, CLINICA_NOMBRE
from .consultas import a_fecha
from .db import db_session
from .errors import DatosInvalidos, NoEncontrado, PermisoDenegado
from .models import (
    ConfiguracionInforme,
    EnvioInforme,
    EstadoEnvio,
    EstadoInforme,
    FirmaDigital,
    InformeMedico,
    Medico,
    MetodoEnvio,
    Paciente,
)
from .notificaciones import Adjunto, enviar_plantilla
from .services import obtener_o_404
from .tiempo import ahora, hoy

logger = logging.getLogger(__name__)

PREFIJO_DEFAULT = "INF"
ESTADOS_BLOQUEADOS = (EstadoInforme.FIRMADO, EstadoInforme.ENVIADO)
CAMPOS_ACTUALIZABLES = ("titulo", "tipo_informe", "contenido", "observaciones", "fecha_emision", "estado")
METODOS_SOPORTADOS = (MetodoEnvio.EMAIL, MetodoEnvio.PRESENCIAL)


def hash_contenido(contenido: str) -> str:
    return hashlib.sha256((contenido or "").encode("utf-8")).hexdigest()


def formatea_numero(prefijo: str, secuencial: int) -> str:
    return f"{prefijo}-{secuencial:06d}"


# =========================
# Configuración / numeración
# =========================
def _configuracion(s: Session) -> ConfiguracionInforme:
    cfg = s.scalars(
        select(ConfiguracionInforme).where(ConfiguracionInforme.clinica_alias == CLINICA_ALIAS)
    ).first()
    if cfg is None:
        cfg = ConfiguracionInforme(
            clinica_alias=CLINICA_ALIAS,
            prefijo_numero=PREFIJO_DEFAULT,
            contador_actual=0,
            nombre_clinica=CLINICA_NOMBRE,
        )
        s.add(cfg)
        s.flush()
        logger.info("Configuración de informes creada para %s", CLINICA_ALIAS)
    return cfg


def siguiente_numero(s: Session) -> tuple[str, int]:
    cfg = _configuracion(s)
    cfg.contador_actual += 1
    s.flush()
    return formatea_numero(cfg.prefijo_numero, cfg.contador_actual), cfg.contador_actual


def obtener_configuracion() -> dict:
    with db_session() as s:
        cfg = _configuracion(s)
        return {
            "clinica_alias": cfg.clinica_alias,
            "prefijo_numero": cfg.prefijo_numero,
            "contador_actual": cfg.contador_actual,
            "nombre_clinica": cfg.nombre_clinica,
            "pie_pagina": cfg.pie_pagina,
        }


def actualiza_configuracion(datos: dict) -> dict:
    with db_session() as s:
        cfg = _configuracion(s)
        if datos.get("prefijo_numero"):
            cfg.prefijo_numero = str(datos["prefijo_numero"]).strip().upper()
        for campo in ("nombre_clinica", "pie_pagina"):
            if campo in datos:
                setattr(cfg, campo, datos[campo])
    return obtener_configuracion()


# =========================
# Serialización
# =========================
def _firma_dict(f: FirmaDigital | None) -> dict | None:
    if f is None:
        return None
    return {
        "id": f.id,
        "medico_id": f.medico_id,
        "firma_hash": f.firma_hash,
        "certificado_digital": f.certificado_digital,
        "fecha_firma": f.fecha_firma.isoformat(),
    }


def informe_dict(i: InformeMedico) -> dict:
    medico = i.medico
    return {
        "id": i.id,
        "numero_informe": i.numero_informe,
        "numero_secuencial": i.numero_secuencial,
        "titulo": i.titulo,
        "tipo_informe": i.tipo_informe,
        "contenido": i.contenido,
        "paciente_id": i.paciente_id,
        "medico_id": i.medico_id,
        "estado": i.estado.value,
        "fecha_emision": i.fecha_emision.isoformat(),
        "fecha_envio": i.fecha_envio.isoformat() if i.fecha_envio else None,
        "observaciones": i.observaciones,
        "creado_por": i.creado_por,
        "fecha_creacion": i.fecha_creacion.isoformat() if i.fecha_creacion else None,
        "fecha_actualizacion": i.fecha_actualizacion.isoformat() if i.fecha_actualizacion else None,
        "paciente": {
            "id": i.paciente.id,
            "nombres": i.paciente.nombres,
            "apellidos": i.paciente.apellidos,
            "cedula": i.paciente.cedula,
            "email": i.paciente.email,
        } if i.paciente else None,
        "medico": {
            "id": medico.id,
            "nombres": medico.nombres,
            "apellidos": medico.apellidos,
            "especialidad": medico.especialidad.nombre_especialidad if medico.especialidad else None,
            "mpps": medico.mpps,
            "cm": medico.cm,
        } if medico else None,
        "firmado": bool(i.firmas),
        "firma": _firma_dict(i.firmas[-1] if i.firmas else None),
        "total_envios": len(i.envios),
    }


def _base_query():
    return (
        select(InformeMedico)
        .options(
            joinedload(InformeMedico.paciente),
            joinedload(InformeMedico.medico).joinedload(Medico.especialidad),
            selectinload(InformeMedico.firmas),
            selectinload(InformeMedico.envios),
        )
        .where(InformeMedico.clinica_alias == CLINICA_ALIAS)
    )


def _carga(s: Session, informe_id: int) -> InformeMedico:
    i = s.scalars(_base_query().where(InformeMedico.id == informe_id)).unique().first()
    if i is None:
        raise NoEncontrado("Informe no encontrado")
    return i


def _estado_editable(valor: Any) -> EstadoInforme:
    try:
        estado = valor if isinstance(valor, EstadoInforme) else EstadoInforme(str(valor))
    except ValueError:
        raise DatosInvalidos("Estado de informe no válido") from None
    if estado in ESTADOS_BLOQUEADOS:
        raise DatosInvalidos("Los estados firmado y enviado se asignan al firmar o enviar el informe")
    return estado


# =========================
# CRUD
# =========================
def crea_informe(datos: dict, usuario: Usuario | None = None) -> dict:
    if usuario is not None and usuario.rol == RolUsuario.MEDICO:
        datos = {**datos, "medico_id": usuario.medico_id}
    requeridos = ("titulo", "tipo_informe", "contenido", "paciente_id", "medico_id")
    faltantes = [c for c in requeridos if not datos.get(c)]
    if faltantes:
        raise DatosInvalidos(f"Campos requeridos: {', '.join(faltantes)}")

    with db_session() as s:
        paciente = obtener_o_404(s, Paciente, int(datos["paciente_id"]), "Paciente no encontrado")
        medico = obtener_o_404(s, Medico, int(datos["medico_id"]), "Médico no encontrado")
        numero, secuencial = siguiente_numero(s)
        i = InformeMedico(
            numero_informe=numero,
            numero_secuencial=secuencial,
            titulo=str(datos["titulo"]).strip(),
            tipo_informe=str(datos["tipo_informe"]).strip(),
            contenido=datos["contenido"],
            paciente_id=paciente.id,
            medico_id=medico.id,
            estado=EstadoInforme.BORRADOR,
            fecha_emision=a_fecha(datos["fecha_emision"], "fecha_emision") if datos.get("fecha_emision") else hoy(),
            observaciones=datos.get("observaciones"),
            creado_por=usuario.id if usuario is not None else None,
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(i)
        s.flush()
        informe_id = i.id
        logger.info("Informe %s creado (%s)", numero, informe_id)
    return get_informe(informe_id)


def lista_informes(filtros: dict | None = None) -> list[dict]:
    """Filtros: paciente_id, medico_id, estado, tipo_informe, fecha_desde, fecha_hasta, busqueda, limit, offset."""
    f = filtros or {}
    q = _base_query()
    if f.get("paciente_id"):
        q = q.where(InformeMedico.paciente_id == int(f["paciente_id"]))
    if f.get("medico_id"):
        q = q.where(InformeMedico.medico_id == int(f["medico_id"]))
    if f.get("estado"):
        try:
            q = q.where(InformeMedico.estado == EstadoInforme(f["estado"]))
        except ValueError:
            raise DatosInvalidos("Estado de informe no válido") from None
    if f.get("tipo_informe"):
        q = q.where(InformeMedico.tipo_informe == f["tipo_informe"])
    if f.get("fecha_desde"):
        q = q.where(InformeMedico.fecha_emision >= a_fecha(f["fecha_desde"], "fecha_desde"))
    if f.get("fecha_hasta"):
        q = q.where(InformeMedico.fecha_emision <= a_fecha(f["fecha_hasta"], "fecha_hasta"))
    if f.get("busqueda"):
        like = f"%{f['busqueda'].strip()}%"
        q = q.where(or_(InformeMedico.titulo.ilike(like), InformeMedico.numero_informe.ilike(like)))

    q = q.order_by(InformeMedico.fecha_creacion.desc(), InformeMedico.id.desc())
    if f.get("limit"):
        q = q.limit(int(f["limit"])).offset(int(f.get("offset") or 0))
    with db_session() as s:
        return [informe_dict(i) for i in s.scalars(q).unique()]


def get_informe(informe_id: int) -> dict:
    with db_session() as s:
        return informe_dict(_carga(s, informe_id))


def actualiza_informe(informe_id: int, datos: dict) -> dict:
    cambios = {k: datos[k] for k in CAMPOS_ACTUALIZABLES if datos.get(k) is not None}
    if not cambios:
        raise DatosInvalidos("No hay campos para actualizar")
    with db_session() as s:
        i = _carga(s, informe_id)
        if i.estado in ESTADOS_BLOQUEADOS:
            raise DatosInvalidos("No se puede modificar un informe firmado o enviado")
        if "estado" in cambios:
            i.estado = _estado_editable(cambios.pop("estado"))
        if "fecha_emision" in cambios:
            i.fecha_emision = a_fecha(cambios.pop("fecha_emision"), "fecha_emision")
        for k, v in cambios.items():
            setattr(i, k, v)
    return get_informe(informe_id)


def elimina_informe(informe_id: int) -> None:
    with db_session() as s:
        i = _carga(s, informe_id)
        if i.estado != EstadoInforme.BORRADOR:
            raise DatosInvalidos("Solo se pueden eliminar informes en borrador")
        s.delete(i)
        logger.info("Informe %s eliminado", i.numero_informe)


# =========================
# Firma digital
# =========================
def firmar_informe(
    informe_id: int,
    usuario: Usuario | None = None,
    certificado_digital: str | None = None,
    ip_firma: str | None = None,
    user_agent: str | None = None,
) -> dict:
    with db_session() as s:
        i = _carga(s, informe_id)
        if usuario is not None:
            es_autor = usuario.rol == RolUsuario.MEDICO and usuario.medico_id == i.medico_id
            if not es_autor and usuario.rol != RolUsuario.ADMINISTRADOR:
                raise PermisoDenegado("Solo el médico autor o un administrador pueden firmar el informe")
        if i.estado in ESTADOS_BLOQUEADOS:
            raise DatosInvalidos("El informe ya está firmado")

        firma = FirmaDigital(
            informe_id=i.id,
            medico_id=i.medico_id,
            firma_hash=hash_contenido(i.contenido),
            certificado_digital=certificado_digital,
            ip_firma=ip_firma,
            user_agent=(user_agent or "")[:255] or None,
        )
        i.firmas.append(firma)
        i.estado = EstadoInforme.FIRMADO
        s.flush()
        logger.info("Informe %s firmado (hash %s)", i.numero_informe, firma.firma_hash[:12])
        return informe_dict(i)


def verificar_firma(informe_id: int) -> dict:
    with db_session() as s:
        i = _carga(s, informe_id)
        firma = i.firmas[-1] if i.firmas else None
        if firma is None:
            return {"valida": False, "firma_hash": "", "fecha_firma": None, "certificado_digital": ""}
        return {
            "valida": firma.firma_hash == hash_contenido(i.contenido),
            "firma_hash": firma.firma_hash,
            "fecha_firma": firma.fecha_firma.isoformat(),
            "certificado_digital": firma.certificado_digital or "",
        }


# =========================
# PDF / envío
# =========================
def _datos_pdf(s: Session, i: InformeMedico) -> dict:
    cfg = _configuracion(s)
    datos = informe_dict(i)
    datos["nombre_clinica"] = cfg.nombre_clinica or CLINICA_NOMBRE
    datos["pie_pagina"] = cfg.pie_pagina
    return datos


def pdf_informe(informe_id: int) -> tuple[bytes, str]:
    with db_session() as s:
        datos = _datos_pdf(s, _carga(s, informe_id))
    return reportes.pdf_informe(datos), f"{datos['numero_informe']}.pdf"


def enviar_informe(
    informe_id: int,
    destinatario: str | None = None,
    metodo_envio: str = "email",
    observaciones: str | None = None,
) -> dict:
    try:
        metodo = MetodoEnvio(metodo_envio)
    except ValueError:
        raise DatosInvalidos("Método de envío no válido") from None
    if metodo not in METODOS_SOPORTADOS:
        raise DatosInvalidos("Método de envío no soportado. Use email o presencial")

    with db_session() as s:
        i = _carga(s, informe_id)
        datos = _datos_pdf(s, i)
        paciente = datos["paciente"] or {}
        if metodo == MetodoEnvio.EMAIL:
            destinatario = destinatario or paciente.get("email")
            if not destinatario:
                raise DatosInvalidos("El paciente no tiene email registrado y no se indicó destinatario")

    if metodo == MetodoEnvio.EMAIL:
        pdf = reportes.pdf_informe(datos)
        variables = {
            "paciente_nombre": f"{paciente.get('nombres', '')} {paciente.get('apellidos', '')}".strip(),
            "medico_nombre": f"{datos['medico']['nombres']} {datos['medico']['apellidos']}" if datos["medico"] else "",
            "numero_informe": datos["numero_informe"],
            "titulo": datos["titulo"],
            "fecha_emision": datos["fecha_emision"],
        }
        ok = enviar_plantilla(
            "informe_envio",
            destinatario,
            variables,
            adjuntos=[Adjunto(filename=f"{datos['numero_informe']}.pdf", content=pdf)],
        )
        estado_envio = EstadoEnvio.ENVIADO if ok else EstadoEnvio.FALLIDO
    else:
        destinatario = destinatario or "presencial"
        estado_envio = EstadoEnvio.ENTREGADO

    with db_session() as s:
        i = _carga(s, informe_id)
        momento = ahora()
        envio = EnvioInforme(
            informe_id=i.id,
            paciente_id=i.paciente_id,
            metodo_envio=metodo,
            estado_envio=estado_envio,
            destinatario=destinatario,
            observaciones=observaciones,
            fecha_envio=momento,
            fecha_entrega=momento if estado_envio == EstadoEnvio.ENTREGADO else None,
        )
        i.envios.append(envio)
        if estado_envio != EstadoEnvio.FALLIDO:
            i.estado = EstadoInforme.ENVIADO
            i.fecha_envio = momento
        s.flush()
        logger.info("Informe %s: envío %s a %s", i.numero_informe, estado_envio.value, destinatario)
        return {
            "id": envio.id,
            "informe_id": i.id,
            "metodo_envio": metodo.value,
            "estado_envio": estado_envio.value,
            "destinatario": destinatario,
            "fecha_envio": momento.isoformat(),
        }


def envios_de_informe(informe_id: int) -> list[dict]:
    with db_session() as s:
        i = _carga(s, informe_id)
        return [
            {
                "id": e.id,
                "metodo_envio": e.metodo_envio.value,
                "estado_envio": e.estado_envio.value,
                "destinatario": e.destinatario,
                "observaciones": e.observaciones,
                "fecha_envio": e.fecha_envio.isoformat(),
                "fecha_entrega": e.fecha_entrega.isoformat() if e.fecha_entrega else None,
            }
            for e in i.envios
        ]


# =========================
# Estadísticas
# =========================
def _resumen_firmas(total: int, firmados: int) -> dict:
    return {
        "total_informes": total,
        "informes_firmados": firmados,
        "informes_sin_firma": total - firmados,
        "porcentaje_firmados": round(firmados * 100 / total, 2) if total else 0,
    }


def _firmados_subq():
    return select(FirmaDigital.informe_id).distinct()


def estadisticas_informes() -> dict:
    with db_session() as s:
        base = select(func.count(InformeMedico.id)).where(InformeMedico.clinica_alias == CLINICA_ALIAS)
        total = s.execute(base).scalar_one()
        firmados = s.execute(base.where(InformeMedico.id.in_(_firmados_subq()))).scalar_one()
    return _resumen_firmas(total, firmados)


def estadisticas_por_medico(medico_id: int) -> dict:
    with db_session() as s:
        medico = obtener_o_404(s, Medico, medico_id, "Médico no encontrado")
        base = select(func.count(InformeMedico.id)).where(
            InformeMedico.clinica_alias == CLINICA_ALIAS, InformeMedico.medico_id == medico_id
        )
        total = s.execute(base).scalar_one()
        firmados = s.execute(base.where(InformeMedico.id.in_(_firmados_subq()))).scalar_one()
        return {
            "medico_id": medico.id,
            "medico_nombres": medico.nombres,
            "medico_apellidos": medico.apellidos,
            **_resumen_firmas(total, firmados),
        }


def estadisticas_todos_medicos() -> list[dict]:
    with db_session() as s:
        ids = s.scalars(
            select(InformeMedico.medico_id)
            .where(InformeMedico.clinica_alias == CLINICA_ALIAS)
            .distinct()
            .order_by(InformeMedico.medico_id)
        ).all()
    return [estadisticas_por_medico(mid) for mid in ids]
