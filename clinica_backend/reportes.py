"""
Generación de archivos: reporte financiero (Excel / PDF) e informe médico (PDF).

Las funciones reciben datos ya cargados (dicts) y devuelven bytes.
"""
from __future__ import annotations

import html
import io
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import bleach
from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch, mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .config import CLINICA_NOMBRE
from .finanzas import TODAS, moneda_principal, total_lineas, totales_por_moneda
from .tiempo import ahora

logger = logging.getLogger(__name__)

COLOR_PRINCIPAL = "366092"

COLUMNAS_EXCEL = [
    ("Fecha", 15),
    ("Paciente", 25),
    ("Médico", 25),
    ("Especialidad", 20),
    ("Servicios", 30),
    ("Total", 15),
    ("Moneda", 10),
    ("Estado Pago", 15),
]
COLUMNA_TOTALES = 7  # G


# =========================
# Helpers de formato
# =========================
def monto(valor: Decimal | float | int | None) -> str:
    return f"{Decimal(str(valor or 0)):.2f}"


def fecha_txt(valor: Any) -> str:
    if not valor:
        return "N/A"
    if isinstance(valor, datetime):
        valor = valor.date()
    if not isinstance(valor, date):
        try:
            valor = date.fromisoformat(str(valor)[:10])
        except ValueError:
            return str(valor)
    return valor.strftime("%d/%m/%Y")


def periodo_txt(filtros: dict | None) -> str:
    f = filtros or {}
    return f"{fecha_txt(f.get('fecha_desde'))} - {fecha_txt(f.get('fecha_hasta'))}"


def _nombre(persona: dict) -> str:
    return f"{persona.get('nombres') or ''} {persona.get('apellidos') or ''}".strip()


def servicios_txt(consulta: dict) -> str:
    lineas = consulta["servicios_consulta"]
    if not lineas:
        return "Sin servicios"
    return ", ".join(
        f"{(ln['servicio'] or {}).get('nombre_servicio') or 'N/A'} ({monto(ln['monto_pagado'])} {ln['moneda_pago']})"
        for ln in lineas
    )


def _moneda_filtrada(opciones: dict | None) -> str | None:
    moneda = (opciones or {}).get("moneda")
    return moneda if moneda and moneda != TODAS else None


# =========================
# Excel (openpyxl)
# =========================
def excel_reporte_financiero(consultas: list[dict], filtros: dict | None, opciones: dict | None = None) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Reporte Financiero"

    ws.append([titulo for titulo, _ in COLUMNAS_EXCEL])
    for idx, (_, ancho) in enumerate(COLUMNAS_EXCEL, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = ancho
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(fill_type="solid", fgColor=COLOR_PRINCIPAL)
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill

    for c in consultas:
        ws.append([
            fecha_txt(c["fecha_pautada"]),
            _nombre(c["paciente"]),
            _nombre(c["medico"]),
            c["medico"].get("especialidad") or "N/A",
            servicios_txt(c),
            float(total_lineas(c)),
            moneda_principal(c),
            "Pagado" if c["fecha_pago"] else "Pendiente",
        ])

    # Fila de totales: una celda por moneda a partir de la columna G
    ws.append(["TOTALES:"])
    fila_totales = ws.max_row
    ws.cell(row=fila_totales, column=1).font = Font(bold=True)
    for offset, (moneda, total) in enumerate(totales_por_moneda(consultas).items()):
        cell = ws.cell(row=fila_totales, column=COLUMNA_TOTALES + offset, value=f"{moneda}: {monto(total)}")
        cell.font = Font(bold=True)

    ws.append([f"Reporte generado el: {ahora().strftime('%d/%m/%Y')}"])
    ws.append([f"Período: {periodo_txt(filtros)}"])
    moneda = _moneda_filtrada(opciones)
    if moneda:
        ws.append([f"Moneda filtrada: {moneda}"])

    thin = Side(style="thin")
    borde = Border(top=thin, left=thin, bottom=thin, right=thin)
    for row in ws.iter_rows():
        for cell in row:
            if cell.value is not None:
                cell.border = borde

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


# =========================
# PDF (reportlab)
# =========================
def _estilos() -> dict[str, ParagraphStyle]:
    styles = getSampleStyleSheet()
    principal = colors.HexColor(f"#{COLOR_PRINCIPAL}")
    return {
        "titulo": ParagraphStyle(
            "Titulo", parent=styles["Heading1"], fontSize=20, textColor=principal, alignment=1, spaceAfter=4,
        ),
        "subtitulo": ParagraphStyle(
            "Subtitulo", parent=styles["Normal"], fontSize=11, textColor=colors.grey, alignment=1, spaceAfter=12,
        ),
        "seccion": ParagraphStyle(
            "Seccion", parent=styles["Heading2"], fontSize=12, textColor=principal, spaceBefore=14, spaceAfter=6,
        ),
        "cuerpo": ParagraphStyle("Cuerpo", parent=styles["Normal"], fontSize=10, leading=14, spaceAfter=6),
        "celda": ParagraphStyle("Celda", parent=styles["Normal"], fontSize=8, leading=10),
        "pie": ParagraphStyle("Pie", parent=styles["Normal"], fontSize=8, textColor=colors.grey, alignment=1),
    }


def _tabla_info(filas: list[list[str]]) -> Table:
    t = Table(filas, colWidths=[2.0 * inch, 4.0 * inch], hAlign="LEFT")
    t.setStyle(
        TableStyle([
            ("FONT", (0, 0), (0, -1), "Helvetica-Bold", 9),
            ("FONT", (1, 0), (1, -1), "Helvetica", 9),
            ("TEXTCOLOR", (0, 0), (0, -1), colors.HexColor(f"#{COLOR_PRINCIPAL}")),
            ("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#f8f9fa")),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ])
    )
    return t


def pdf_reporte_financiero(consultas: list[dict], filtros: dict | None, opciones: dict | None = None) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=15 * mm,
        rightMargin=15 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
        title="Reporte Financiero",
    )
    st = _estilos()
    story: list = [
        Paragraph("Reporte Financiero", st["titulo"]),
        Paragraph(f"{html.escape(CLINICA_NOMBRE)} - Sistema de Gestión Médica", st["subtitulo"]),
    ]

    moneda = _moneda_filtrada(opciones)
    info = [
        ["Fecha de generación:", ahora().strftime("%d/%m/%Y")],
        ["Período:", periodo_txt(filtros)],
    ]
    if moneda:
        info.append(["Moneda filtrada:", moneda])
    info.append(["Total de consultas:", str(len(consultas))])
    story += [_tabla_info(info), Spacer(1, 0.2 * inch)]

    data: list[list[Any]] = [["Fecha", "Paciente", "Médico", "Especialidad", "Servicios", "Total", "Estado"]]
    for c in consultas:
        data.append([
            fecha_txt(c["fecha_pautada"]),
            Paragraph(html.escape(_nombre(c["paciente"])), st["celda"]),
            Paragraph(html.escape(_nombre(c["medico"])), st["celda"]),
            Paragraph(html.escape(c["medico"].get("especialidad") or "N/A"), st["celda"]),
            Paragraph(html.escape(servicios_txt(c)), st["celda"]),
            f"{monto(total_lineas(c))} {moneda_principal(c)}",
            "Pagado" if c["fecha_pago"] else "Pendiente",
        ])
    tabla = Table(
        data,
        colWidths=[0.9 * inch, 1.6 * inch, 1.6 * inch, 1.3 * inch, 3.2 * inch, 1.1 * inch, 0.9 * inch],
        repeatRows=1,
    )
    tabla.setStyle(
        TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(f"#{COLOR_PRINCIPAL}")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 9),
            ("FONT", (0, 1), (-1, -1), "Helvetica", 8),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f2f2f2")]),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#dddddd")),
        ])
    )
    story.append(tabla)

    totales = totales_por_moneda(consultas)
    if moneda:
        totales = {k: v for k, v in totales.items() if k == moneda}
    story.append(Paragraph("Resumen por Moneda:", st["seccion"]))
    if totales:
        story.append(_tabla_info([[f"Total en {m}:", monto(t)] for m, t in totales.items()]))
    else:
        story.append(Paragraph("Sin servicios registrados en el período.", st["cuerpo"]))

    story += [
        Spacer(1, 0.3 * inch),
        Paragraph(f"Reporte generado automáticamente por {html.escape(CLINICA_NOMBRE)}", st["pie"]),
        Paragraph(f"Fecha: {ahora().strftime('%d/%m/%Y %H:%M:%S')}", st["pie"]),
    ]

    doc.build(story)
    return buffer.getvalue()


# =========================
# Informe médico
# =========================
# Etiquetas que produce el editor de informes; el resto se elimina
ETIQUETAS_INFORME = {"p", "br", "b", "strong", "i", "em", "u", "h1", "h2", "h3", "h4", "ul", "ol", "li"}
_BLOQUE_RE = re.compile(r"</?(?:p|h\d|ul|ol|li)>|\n\s*\n")
_INLINE_RE = re.compile(r"(</?[biu]>)")
_INLINE_TAG_RE = re.compile(r"<(/?)([biu])>")
_ENTIDAD_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|#\d+|#x[0-9a-fA-F]+);)\w+;")


def _balancea(bloque: str, abiertas: list[str]) -> tuple[str, list[str]]:
    """
    Reabre las etiquetas heredadas del bloque anterior y cierra al final las
    que quedan abiertas; Paragraph exige marcado bien anidado.
    """
    pila = list(abiertas)
    partes = [f"<{t}>" for t in pila]
    for token in _INLINE_RE.split(bloque):
        m = _INLINE_TAG_RE.fullmatch(token)
        if m is None:
            partes.append(token)
        elif not m.group(1):
            pila.append(m.group(2))
            partes.append(token)
        elif m.group(2) in pila:
            while pila:
                t = pila.pop()
                partes.append(f"</{t}>")
                if t == m.group(2):
                    break
        # cierre sin apertura: se descarta
    partes += [f"</{t}>" for t in reversed(pila)]
    return "".join(partes), pila


def html_a_parrafos(contenido: str | None) -> list[str]:
    """
    Convierte el contenido HTML del informe en textos aptos para Paragraph.

    bleach deja solo el marcado permitido; negrita, cursiva, subrayado y los
    saltos de línea se conservan, el resto de etiquetas se descarta.
    """
    if not contenido:
        return []
    limpio = bleach.clean(contenido, tags=ETIQUETAS_INFORME, attributes={}, strip=True)
    limpio = re.sub(r"<(/?)strong>", r"<\1b>", limpio)
    limpio = re.sub(r"<(/?)em>", r"<\1i>", limpio)
    limpio = re.sub(r"<br\s*/?>", "<br/>", limpio)
    limpio = _ENTIDAD_RE.sub(lambda m: html.escape(html.unescape(m.group(0)), quote=False), limpio)

    parrafos: list[str] = []
    abiertas: list[str] = []
    for bloque in _BLOQUE_RE.split(limpio):
        texto, abiertas = _balancea(" ".join(bloque.split()), abiertas)
        if re.sub(r"<[^>]+>", "", texto).strip():
            parrafos.append(texto)
    return parrafos


def pdf_informe(informe: dict) -> bytes:
    """
    informe: numero_informe, titulo, tipo_informe, fecha_emision, contenido,
    observaciones, paciente{...}, medico{...}, firma{firma_hash, fecha_firma} | None,
    nombre_clinica, pie_pagina.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=0.8 * inch,
        rightMargin=0.8 * inch,
        topMargin=0.8 * inch,
        bottomMargin=0.8 * inch,
        title=f"Informe {informe.get('numero_informe', '')}",
    )
    st = _estilos()
    paciente = informe.get("paciente") or {}
    medico = informe.get("medico") or {}

    story: list = [
        Paragraph(html.escape(informe.get("nombre_clinica") or CLINICA_NOMBRE), st["titulo"]),
        Paragraph(html.escape(informe.get("titulo") or "Informe Médico"), st["subtitulo"]),
        _tabla_info([
            ["Número:", informe.get("numero_informe") or ""],
            ["Tipo:", informe.get("tipo_informe") or ""],
            ["Fecha de emisión:", fecha_txt(informe.get("fecha_emision"))],
            ["Paciente:", _nombre(paciente)],
            ["Cédula:", paciente.get("cedula") or "N/A"],
            ["Médico:", _nombre(medico)],
            ["Especialidad:", medico.get("especialidad") or "N/A"],
        ]),
        Paragraph("Contenido", st["seccion"]),
    ]
    parrafos = html_a_parrafos(informe.get("contenido"))
    story += [Paragraph(p, st["cuerpo"]) for p in parrafos] or [Paragraph("Sin contenido.", st["cuerpo"])]

    if informe.get("observaciones"):
        story += [
            Paragraph("Observaciones", st["seccion"]),
            Paragraph(html.escape(informe["observaciones"]), st["cuerpo"]),
        ]

    registro = [x for x in (
        f"MPPS: {medico['mpps']}" if medico.get("mpps") else None,
        f"CM: {medico['cm']}" if medico.get("cm") else None,
    ) if x]
    story += [
        Spacer(1, 0.5 * inch),
        Paragraph("_______________________________", st["cuerpo"]),
        Paragraph(f"<b>{html.escape(_nombre(medico))}</b>", st["cuerpo"]),
    ]
    if registro:
        story.append(Paragraph(" - ".join(registro), st["cuerpo"]))

    firma = informe.get("firma")
    if firma:
        story.append(
            Paragraph(
                f"Firmado digitalmente el {fecha_txt(firma.get('fecha_firma'))}. "
                f"Hash: {firma.get('firma_hash')}",
                st["pie"],
            )
        )
    if informe.get("pie_pagina"):
        story += [Spacer(1, 0.2 * inch), Paragraph(html.escape(informe["pie_pagina"]), st["pie"])]

    doc.build(story)
    pdf = buffer.getvalue()
    logger.info("PDF del informe %s generado (%s bytes)", informe.get("numero_informe"), len(pdf))
    return pdf
