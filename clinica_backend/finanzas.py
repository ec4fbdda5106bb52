"""
Reportes financieros sobre consultas y servicios cobrados.

Las consultas se agrupan con sus líneas de servicio; el filtro de moneda
conserva solo las consultas con al menos una línea en esa moneda y suma
únicamente esas líneas.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import joinedload, selectinload

from .config import CLINICA_ALIAS
from .consultas import a_fecha
from .db import db_session
from .errors import DatosInvalidos
from .models import Consulta, Medico, Paciente, ServicioConsulta
from .services import num, obtener_o_404
from .tiempo import ahora

logger = logging.getLogger(__name__)

TODAS = "TODAS"
MONEDAS_FILTRO = (TODAS, "USD", "VES")
LIMITE_EXPORTACION = 1000
SIN_MONEDA = "N/A"

MEDIA_TYPES = {
    "pdf": "application/pdf",
    "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
EXTENSIONES = {"pdf": "pdf", "excel": "xlsx"}


@dataclass(frozen=True)
class Exportacion:
    contenido: bytes
    filename: str
    media_type: str


# =========================
# Carga
# =========================
def _moneda_filtro(moneda: str | None) -> str:
    moneda = (moneda or TODAS).upper()
    if moneda not in MONEDAS_FILTRO:
        raise DatosInvalidos("La moneda debe ser TODAS, USD o VES")
    return moneda


def _linea(sc: ServicioConsulta) -> dict:
    sv = sc.servicio
    return {
        "id": sc.id,
        "monto_pagado": sc.monto_pagado,
        "moneda_pago": sc.moneda_pago.value,
        "tipo_cambio": sc.tipo_cambio,
        "observaciones": sc.observaciones,
        "servicio": {
            "id": sv.id,
            "nombre_servicio": sv.nombre_servicio,
            "monto_base": sv.monto_base,
            "moneda": sv.moneda.value,
            "descripcion": sv.descripcion,
        } if sv else None,
    }


def cargar_consultas(filtros: dict | None, limite: int | None = None) -> list[dict]:
    """
    Consultas de la clínica con paciente, médico, especialidad y líneas de servicio.

    filtros: fecha_desde, fecha_hasta, medico_id, paciente_cedula,
    estado_pago (todos | pagado | pendiente).
    """
    f = filtros or {}
    q = (
        select(Consulta)
        .join(Paciente, Paciente.id == Consulta.paciente_id)
        .options(
            joinedload(Consulta.paciente),
            joinedload(Consulta.medico).joinedload(Medico.especialidad),
            selectinload(Consulta.servicios_consulta).joinedload(ServicioConsulta.servicio),
        )
        .where(Consulta.clinica_alias == CLINICA_ALIAS)
    )
    if f.get("fecha_desde"):
        q = q.where(Consulta.fecha_pautada >= a_fecha(f["fecha_desde"], "fecha_desde"))
    if f.get("fecha_hasta"):
        q = q.where(Consulta.fecha_pautada <= a_fecha(f["fecha_hasta"], "fecha_hasta"))
    if f.get("medico_id"):
        q = q.where(Consulta.medico_id == int(f["medico_id"]))
    if f.get("paciente_cedula"):
        q = q.where(Paciente.cedula == str(f["paciente_cedula"]).strip().upper())

    estado_pago = (f.get("estado_pago") or "todos").lower()
    if estado_pago == "pagado":
        q = q.where(Consulta.fecha_pago.is_not(None))
    elif estado_pago == "pendiente":
        q = q.where(Consulta.fecha_pago.is_(None))
    elif estado_pago != "todos":
        raise DatosInvalidos("estado_pago debe ser todos, pagado o pendiente")

    q = q.order_by(Consulta.fecha_pautada.desc(), Consulta.id)
    if limite:
        q = q.limit(limite)

    with db_session() as s:
        out = []
        for c in s.scalars(q).unique():
            medico = c.medico
            out.append({
                "id": c.id,
                "fecha_pautada": c.fecha_pautada,
                "hora_pautada": c.hora_pautada,
                "estado_consulta": c.estado_consulta.value,
                "fecha_pago": c.fecha_pago,
                "metodo_pago": c.metodo_pago,
                "observaciones_financieras": c.observaciones_financieras,
                "paciente": {
                    "nombres": c.paciente.nombres,
                    "apellidos": c.paciente.apellidos,
                    "cedula": c.paciente.cedula,
                },
                "medico": {
                    "nombres": medico.nombres if medico else "",
                    "apellidos": medico.apellidos if medico else "",
                    "especialidad": medico.especialidad.nombre_especialidad
                    if medico and medico.especialidad else None,
                },
                "servicios_consulta": [_linea(sc) for sc in c.servicios_consulta],
            })
        return out


def filtrar_por_moneda(consultas: list[dict], moneda: str) -> list[dict]:
    """Consultas con alguna línea en la moneda; cada una conserva solo esas líneas."""
    if moneda == TODAS:
        return consultas
    out = []
    for c in consultas:
        lineas = [ln for ln in c["servicios_consulta"] if ln["moneda_pago"] == moneda]
        if lineas:
            out.append({**c, "servicios_consulta": lineas})
    return out


def total_lineas(consulta: dict) -> Decimal:
    return sum((ln["monto_pagado"] for ln in consulta["servicios_consulta"]), Decimal("0"))


def moneda_principal(consulta: dict) -> str:
    lineas = consulta["servicios_consulta"]
    return lineas[0]["moneda_pago"] if lineas else SIN_MONEDA


def totales_por_moneda(consultas: list[dict]) -> dict[str, Decimal]:
    totales: dict[str, Decimal] = {}
    for c in consultas:
        for ln in c["servicios_consulta"]:
            totales[ln["moneda_pago"]] = totales.get(ln["moneda_pago"], Decimal("0")) + ln["monto_pagado"]
    return totales


def _nombre(persona: dict) -> str:
    return f"{persona.get('nombres') or ''} {persona.get('apellidos') or ''}".strip()


# =========================
# Consultas financieras
# =========================
def _fila(c: dict) -> dict:
    return {
        "id": c["id"],
        "paciente_nombre": c["paciente"]["nombres"] or "",
        "paciente_apellidos": c["paciente"]["apellidos"] or "",
        "paciente_cedula": c["paciente"]["cedula"] or "",
        "medico_nombre": c["medico"]["nombres"] or "",
        "medico_apellidos": c["medico"]["apellidos"] or "",
        "especialidad_nombre": c["medico"]["especialidad"] or "",
        "fecha_consulta": c["fecha_pautada"].isoformat(),
        "hora_consulta": c["hora_pautada"].strftime("%H:%M"),
        "estado_consulta": "pagado" if c["fecha_pago"] else "pendiente",
        "servicios": [
            {
                "id": ln["id"],
                "nombre_servicio": (ln["servicio"] or {}).get("nombre_servicio", ""),
                "descripcion": (ln["servicio"] or {}).get("descripcion") or "",
                "precio_unitario": num((ln["servicio"] or {}).get("monto_base")),
                "cantidad": 1,
                "subtotal": num(ln["monto_pagado"]),
                "descuento": 0,
                "total_servicio": num(ln["monto_pagado"]),
                "moneda_pago": ln["moneda_pago"],
                "tipo_cambio": num(ln["tipo_cambio"]),
                "observaciones": ln["observaciones"],
            }
            for ln in c["servicios_consulta"]
        ],
        "total_consulta": num(total_lineas(c)),
        "moneda_principal": moneda_principal(c),
        "fecha_pago": c["fecha_pago"].isoformat() if c["fecha_pago"] else None,
        "metodo_pago": c["metodo_pago"],
        "observaciones_financieras": c["observaciones_financieras"],
    }


def consultas_financieras(
    filtros: dict | None = None,
    paginacion: dict | None = None,
    moneda: str | None = None,
) -> dict:
    moneda = _moneda_filtro(moneda)
    consultas = filtrar_por_moneda(cargar_consultas(filtros), moneda)

    if not paginacion:
        return {"data": [_fila(c) for c in consultas], "paginacion": None}

    pagina = max(int(paginacion.get("pagina") or 1), 1)
    limite = max(int(paginacion.get("limite") or 10), 1)
    total = len(consultas)
    total_paginas = math.ceil(total / limite)
    pagina_items = consultas[(pagina - 1) * limite: pagina * limite]
    return {
        "data": [_fila(c) for c in pagina_items],
        "paginacion": {
            "pagina_actual": pagina,
            "limite": limite,
            "total_registros": total,
            "total_paginas": total_paginas,
            "tiene_siguiente": pagina < total_paginas,
            "tiene_anterior": pagina > 1,
        },
    }


def resumen_financiero(filtros: dict | None = None, moneda: str | None = None) -> dict:
    moneda = _moneda_filtro(moneda)
    todas = cargar_consultas(filtros)
    consultas = filtrar_por_moneda(todas, moneda)

    total_ingresos = Decimal("0")
    por_especialidad: dict[str, Decimal] = {}
    por_medico: dict[str, Decimal] = {}
    for c in consultas:
        total = total_lineas(c)
        total_ingresos += total
        esp = c["medico"]["especialidad"] or "Sin especialidad"
        med = _nombre(c["medico"]) or "Sin médico"
        por_especialidad[esp] = por_especialidad.get(esp, Decimal("0")) + total
        por_medico[med] = por_medico.get(med, Decimal("0")) + total

    pagadas = sum(1 for c in consultas if c["fecha_pago"])

    # Las estadísticas por moneda se calculan sobre todas las consultas, sin filtro de moneda
    por_moneda: dict[str, dict] = {}
    monedas = sorted({ln["moneda_pago"] for c in todas for ln in c["servicios_consulta"]})
    for m in monedas:
        de_moneda = filtrar_por_moneda(todas, m)
        ingresos = sum((total_lineas(c) for c in de_moneda), Decimal("0"))
        pagadas_m = sum(1 for c in de_moneda if c["fecha_pago"])
        por_moneda[m] = {
            "total_consultas": len(de_moneda),
            "total_ingresos": num(ingresos),
            "consultas_pagadas": pagadas_m,
            "consultas_pendientes": len(de_moneda) - pagadas_m,
            "promedio_por_consulta": num(ingresos / len(de_moneda)) if de_moneda else 0.0,
        }

    return {
        "total_consultas": len(consultas),
        "total_ingresos": num(total_ingresos),
        "total_por_especialidad": {k: num(v) for k, v in por_especialidad.items()},
        "total_por_medico": {k: num(v) for k, v in por_medico.items()},
        "consultas_pagadas": pagadas,
        "consultas_pendientes": len(consultas) - pagadas,
        "estadisticas_por_moneda": por_moneda,
        "moneda_filtrada": moneda,
    }


def marcar_pagada(
    consulta_id: int,
    fecha_pago: date | str | None,
    metodo_pago: str | None,
    observaciones: str | None = None,
) -> dict:
    if not fecha_pago or not metodo_pago:
        raise DatosInvalidos("Fecha de pago y método de pago son requeridos")
    fecha = a_fecha(fecha_pago, "fecha_pago")

    with db_session() as s:
        c = obtener_o_404(s, Consulta, consulta_id, "Consulta no encontrada")
        c.fecha_pago = fecha
        c.metodo_pago = metodo_pago
        c.observaciones_financieras = observaciones or None
        logger.info("Consulta %s marcada como pagada (%s, %s)", consulta_id, fecha, metodo_pago)
    return {"message": "Consulta marcada como pagada exitosamente"}


# =========================
# Exportación
# =========================
def _genera(formato: str, consultas: list[dict], filtros: dict, opciones: dict, prefijo: str) -> Exportacion:
    from . import reportes

    if formato == "pdf":
        contenido = reportes.pdf_reporte_financiero(consultas, filtros, opciones)
    elif formato == "excel":
        contenido = reportes.excel_reporte_financiero(consultas, filtros, opciones)
    else:
        raise DatosInvalidos('Formato no soportado. Use "pdf" o "excel"')

    timestamp = int(ahora().timestamp() * 1000)
    filename = f"{prefijo}-{timestamp}.{EXTENSIONES[formato]}"
    logger.info("Reporte %s generado: %s consultas, %s bytes", filename, len(consultas), len(contenido))
    return Exportacion(contenido=contenido, filename=filename, media_type=MEDIA_TYPES[formato])


def exportar_reporte(formato: str | None, filtros: dict | None = None) -> Exportacion:
    formato = (formato or "").lower()
    if formato not in MEDIA_TYPES:
        raise DatosInvalidos('Formato no soportado. Use "pdf" o "excel"')
    filtros = filtros or {}
    moneda = _moneda_filtro(filtros.get("moneda"))
    consultas = filtrar_por_moneda(cargar_consultas(filtros, LIMITE_EXPORTACION), moneda)
    opciones = {"moneda": moneda, "formato": formato}
    return _genera(formato, consultas, filtros, opciones, "reporte-financiero")


def exportar_reporte_avanzado(filtros: dict | None, opciones: dict | None) -> Exportacion:
    if filtros is None:
        raise DatosInvalidos("Filtros son requeridos")
    if opciones is None:
        raise DatosInvalidos("Opciones son requeridas")
    formato = (opciones.get("formato") or "pdf").lower()
    if formato not in MEDIA_TYPES:
        raise DatosInvalidos('Formato no soportado. Use "pdf" o "excel"')
    moneda = _moneda_filtro(opciones.get("moneda"))
    consultas = filtrar_por_moneda(cargar_consultas(filtros, LIMITE_EXPORTACION), moneda)
    return _genera(formato, consultas, filtros, {**opciones, "moneda": moneda}, "reporte-financiero-avanzado")
