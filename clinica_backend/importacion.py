"""
Importación de historias clínicas desde documentos Word (.docx).

El documento se convierte a texto plano (párrafos y tablas en orden) y se
parsea con expresiones regulares pensadas para el formato de las historias
de ginecología: "Nombre ... Edad ... CI ...", "MOTIVO DE CONSULTA:", etc.
"""
from __future__ import annotations

import io
import logging
import re
from datetime import date
from pathlib import Path
from typing import Any

from docx import Document
from docx.table import Table
from sqlalchemy.orm import Session

from .config import CLINICA_ALIAS, MAX_UPLOAD_MB
from .db import db_session
from .errors import DatosInvalidos
from .models import Historico, Medico, Paciente, Sexo
from .services import busca_paciente, obtener_o_404
from .tiempo import hoy

logger = logging.getLogger(__name__)

EXTENSIONES_PERMITIDAS = (".docx",)
MOTIVO_PREDETERMINADO = "Consulta médica"

_EMAIL = r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"
_CORTE = r"(?!ANTECEDENTES|EXAMEN|CONCLUSIONES|PLAN)"

RE_NOMBRE = re.compile(r"Nombre\s+([A-ZÁÉÍÓÚÑ\s]+?)(?:\s+Edad|\s+CI|\s+Cédula|\n)", re.I)
RE_EDAD = re.compile(r"Edad\s+(\d+)\s*(?:años|año)?", re.I)
RE_CEDULA = (
    re.compile(r"CI\s*[-:]?\s*([VEJPG]-?\s*\d+[.\d\s]*)", re.I),
    re.compile(r"Cédula\s*[-:]?\s*([VEJPG]-?\s*\d+[.\d\s]*)", re.I),
)
RE_EMAIL = (
    re.compile(r"CORREO\.?\s*:?\s*" + _EMAIL, re.I),
    re.compile(r"Email\s*:?\s*" + _EMAIL, re.I),
)
RE_TELEFONO = (
    re.compile(r"TLF\s*:?\s*([0-9-]+)", re.I),
    re.compile(r"Teléfono\s*:?\s*([0-9-]+)", re.I),
    re.compile(r"Telf\s*:?\s*([0-9-]+)", re.I),
    re.compile(r"Teléf\s*:?\s*([0-9-]+)", re.I),
)
RE_FUR = re.compile(r"FUR\s*:?\s*(\d{1,2}[./]\d{1,2}[./]\d{4})", re.I)
RE_PARIDAD = re.compile(r"Paridad\s*:?\s*([^\n]+)", re.I)

RE_MOTIVO = re.compile(r"MOTIVO\s+DE\s+CONSULTA\s*:?\s*([^\n_]+)", re.I)
RE_SECCIONES = {
    "antecedentes_personales": re.compile(
        r"ANTECEDENTES\s+PERSONALES\s*:?\s*([^\n]+(?:\n" + _CORTE + r"[^\n]+)*)", re.I
    ),
    "antecedentes_familiares": re.compile(
        r"ANTECEDENTES\s+FAMILIARES\s*:?\s*([^\n]+(?:\n" + _CORTE + r"[^\n]+)*)", re.I
    ),
    "antecedentes_ginecoobstetricos": re.compile(
        r"ANTECEDENTES\s+GINECOOBSTETRICOS?\s*:?\s*([^\n]+(?:\n" + _CORTE + r"[^\n]+)*)", re.I
    ),
    "antecedentes_quirurgicos": re.compile(
        r"ANTECEDENTES\s+QUIRURGICOS?\s*:?\s*([^\n]+(?:\n" + _CORTE + r"[^\n]+)*)", re.I
    ),
    "examen_fisico": re.compile(
        r"EXAMEN\s+F[IÍ]SICO\s*:?\s*([^\n]+(?:\n(?!ANTECEDENTES|EXAMEN|CONCLUSIONES|PLAN|Ultrasonido)[^\n]+)*)",
        re.I,
    ),
}
RE_ULTRASONIDO = re.compile(r"Ultrasonido[^\n]*(?:\n[^\n]+(?:\n(?!CONCLUSIONES|PLAN)[^\n]+)*)", re.I)
RE_CONCLUSIONES = re.compile(r"CONCLUSIONES?\s*:?\s*([^\n]+(?:\n(?!PLAN)[^\n]+)*)", re.I)
RE_PLAN = re.compile(r"\bPLAN\b\s*:?\s*([^\n]+)", re.I)
RE_MEDICO = (
    re.compile(r"\bDr\.?\s*([A-ZÁÉÍÓÚÑ\s]+)", re.I),
    re.compile(r"Médico\s*:?\s*([A-ZÁÉÍÓÚÑ\s]+)", re.I),
)

# (clave, etiqueta) en el orden en que se muestran en la historia
ETIQUETAS_HISTORIA = (
    ("motivo_consulta", "Motivo de Consulta"),
    ("antecedentes_personales", "Antecedentes Personales"),
    ("antecedentes_familiares", "Antecedentes Familiares"),
    ("antecedentes_ginecoobstetricos", "Antecedentes Ginecoobstétricos"),
    ("antecedentes_quirurgicos", "Antecedentes Quirúrgicos"),
    ("examen_fisico", "Examen Físico"),
    ("ultrasonido", "Ultrasonido"),
    ("diagnostico", "Diagnóstico"),
    ("conclusiones", "Conclusiones"),
    ("plan", "Plan"),
)


# =========================
# Extracción de texto
# =========================
def valida_archivo(nombre_archivo: str | None, contenido: bytes) -> None:
    if not nombre_archivo or not contenido:
        raise DatosInvalidos("No se proporcionó ningún archivo")
    if Path(nombre_archivo).suffix.lower() not in EXTENSIONES_PERMITIDAS:
        raise DatosInvalidos("Solo se permiten archivos Word (.docx)")
    if len(contenido) > MAX_UPLOAD_MB * 1024 * 1024:
        raise DatosInvalidos(f"El archivo supera el tamaño máximo de {MAX_UPLOAD_MB} MB")


def _texto_tabla(tabla: Table) -> list[str]:
    lineas = []
    for fila in tabla.rows:
        celdas: list[str] = []
        for celda in fila.cells:
            texto = celda.text.strip()
            # celdas combinadas se repiten en row.cells
            if texto and (not celdas or celdas[-1] != texto):
                celdas.append(texto)
        if celdas:
            lineas.append(" ".join(celdas))
    return lineas


def extraer_texto(contenido: bytes) -> str:
    """Texto plano del .docx, recorriendo párrafos y tablas en el orden del documento."""
    try:
        doc = Document(io.BytesIO(contenido))
    except Exception as e:
        raise DatosInvalidos(f"Error extrayendo texto del documento: {e}") from e

    lineas: list[str] = []
    for bloque in doc.iter_inner_content():
        if isinstance(bloque, Table):
            lineas.extend(_texto_tabla(bloque))
        else:
            lineas.append(bloque.text)
    return "\n".join(lineas)


# =========================
# Parser
# =========================
def _primero(patrones, texto: str) -> str | None:
    for patron in patrones:
        m = patron.search(texto)
        if m and m.group(1):
            return m.group(1).strip()
    return None


def _partes_archivo(nombre_archivo: str | None) -> list[str]:
    if not nombre_archivo:
        return []
    return Path(nombre_archivo).stem.split()


def limpia_cedula(valor: str) -> str:
    """'V- 24.801.037' -> 'V-24801037'."""
    return re.sub(r"\s+", "", valor).replace(".", "").upper()


def fur_iso(valor: str) -> str:
    dia, mes, anio = re.split(r"[./]", valor)
    return f"{anio}-{mes.zfill(2)}-{dia.zfill(2)}"


def extrae_paciente(texto: str, nombre_archivo: str | None = None) -> dict[str, Any]:
    paciente: dict[str, Any] = {"nombres": "", "apellidos": ""}

    partes = _partes_archivo(nombre_archivo)
    if len(partes) >= 2:
        paciente["nombres"] = partes[0]
        paciente["apellidos"] = " ".join(partes[1:])

    m = RE_NOMBRE.search(texto)
    if m:
        nombre = m.group(1).split()
        if nombre:
            paciente["nombres"] = nombre[0]
            if len(nombre) >= 2:
                paciente["apellidos"] = " ".join(nombre[1:])
            elif len(partes) < 2:
                paciente["apellidos"] = ""

    m = RE_EDAD.search(texto)
    if m:
        paciente["edad"] = int(m.group(1))

    cedula = _primero(RE_CEDULA, texto)
    if cedula:
        paciente["cedula"] = limpia_cedula(cedula)

    email = _primero(RE_EMAIL, texto)
    if email:
        paciente["email"] = email

    telefono = _primero(RE_TELEFONO, texto)
    if telefono:
        paciente["telefono"] = telefono

    bajo = texto.lower()
    if "gineco" in bajo or "menarquia" in bajo or "femenino" in bajo:
        paciente["sexo"] = Sexo.FEMENINO.value
    elif "masculino" in bajo:
        paciente["sexo"] = Sexo.MASCULINO.value

    m = RE_FUR.search(texto)
    if m:
        paciente["fur"] = fur_iso(m.group(1))

    paridad = _primero((RE_PARIDAD,), texto)
    if paridad:
        paciente["paridad"] = paridad

    return paciente


def extrae_historia(texto: str) -> dict[str, str]:
    historia: dict[str, str] = {}

    motivo = _primero((RE_MOTIVO,), texto)
    if motivo:
        historia["motivo_consulta"] = motivo

    for clave, patron in RE_SECCIONES.items():
        valor = _primero((patron,), texto)
        if valor:
            historia[clave] = valor

    m = RE_ULTRASONIDO.search(texto)
    if m:
        historia["ultrasonido"] = m.group(0).strip()

    conclusiones = _primero((RE_CONCLUSIONES,), texto)
    if conclusiones:
        historia["conclusiones"] = conclusiones

    plan = _primero((RE_PLAN,), texto)
    if plan:
        historia["plan"] = plan

    partes = []
    if historia.get("examen_fisico"):
        partes.append(f"Examen Físico: {historia['examen_fisico']}")
    if historia.get("ultrasonido"):
        partes.append(f"Ultrasonido: {historia['ultrasonido']}")
    if partes:
        historia["diagnostico"] = "\n\n".join(partes)

    return historia


def extrae_medico(texto: str) -> dict[str, str] | None:
    nombre = _primero(RE_MEDICO, texto)
    if not nombre:
        return None
    partes = nombre.split()
    if len(partes) < 2:
        return None
    return {"nombres": partes[0], "apellidos": " ".join(partes[1:])}


def parsea_documento(texto: str, nombre_archivo: str | None = None) -> dict[str, Any]:
    datos: dict[str, Any] = {
        "paciente": extrae_paciente(texto, nombre_archivo),
        "historia": extrae_historia(texto),
        "raw_text": texto,
    }
    medico = extrae_medico(texto)
    if medico:
        datos["medico"] = medico
    return datos


def formatea_historia(historia: dict[str, str]) -> str:
    return "\n\n".join(
        f"<p><strong>{etiqueta}:</strong> {historia[clave]}</p>"
        for clave, etiqueta in ETIQUETAS_HISTORIA
        if historia.get(clave)
    )


def capitaliza_nombre(nombre: str) -> str:
    return " ".join(p.capitalize() for p in nombre.split())


# =========================
# Importación
# =========================
def resuelve_medico_id(medico_id_token: int | None, medico_id_form: Any = None) -> int:
    """El médico del token manda; si no, el indicado en el formulario."""
    if medico_id_token:
        return int(medico_id_token)
    if medico_id_form not in (None, ""):
        try:
            return int(medico_id_form)
        except (TypeError, ValueError):
            raise DatosInvalidos("medico_id debe ser un número") from None
    raise DatosInvalidos("ID del médico es requerido para asociar la historia médica")


def _fecha_fur(valor: str | None) -> date | None:
    if not valor:
        return None
    try:
        return date.fromisoformat(valor)
    except ValueError:
        logger.warning("FUR no válida en el documento: %s", valor)
        return None


def _guarda_paciente(s: Session, datos: dict[str, Any]) -> tuple[Paciente, bool]:
    """Devuelve (paciente, creado)."""
    p = busca_paciente(s, cedula=datos.get("cedula"), email=datos.get("email"))
    nombres = capitaliza_nombre(datos["nombres"])
    apellidos = capitaliza_nombre(datos["apellidos"])

    if p is None:
        p = Paciente(
            nombres=nombres,
            apellidos=apellidos,
            cedula=datos.get("cedula"),
            email=datos.get("email"),
            telefono=datos.get("telefono"),
            edad=datos.get("edad"),
            sexo=Sexo(datos.get("sexo") or Sexo.FEMENINO.value),
            paridad=datos.get("paridad"),
            fur=_fecha_fur(datos.get("fur")),
            activo=True,
            clinica_alias=CLINICA_ALIAS,
        )
        s.add(p)
        s.flush()
        return p, True

    p.nombres = nombres
    p.apellidos = apellidos
    for campo in ("email", "telefono", "edad"):
        if datos.get(campo):
            setattr(p, campo, datos[campo])
    return p, False


def _crea_historia(s: Session, paciente: Paciente, medico_id: int, historia: dict[str, str], nombre_archivo: str) -> Historico:
    motivo = historia.get("motivo_consulta") or MOTIVO_PREDETERMINADO
    diagnostico = historia.get("diagnostico")
    conclusiones = historia.get("conclusiones")
    plan = historia.get("plan")

    h = Historico(
        paciente_id=paciente.id,
        medico_id=medico_id,
        motivo_consulta=f"<p>{motivo}</p>" + formatea_historia(historia),
        diagnostico=f"<p>{diagnostico}</p>" if diagnostico else None,
        conclusiones=f"<p>{conclusiones}</p>" if conclusiones else None,
        plan=f"<p>{plan}</p>" if plan else None,
        fecha_consulta=hoy(),
        nombre_archivo=nombre_archivo,
        clinica_alias=CLINICA_ALIAS,
    )
    s.add(h)
    s.flush()
    return h


def _importa(s: Session, nombre_archivo: str, contenido: bytes, medico_id: int) -> dict[str, Any]:
    valida_archivo(nombre_archivo, contenido)
    parsed = parsea_documento(extraer_texto(contenido), nombre_archivo)
    datos = parsed["paciente"]
    if not datos["nombres"] or not datos["apellidos"]:
        raise DatosInvalidos("No se pudo extraer el nombre completo del paciente del documento")

    paciente, creado = _guarda_paciente(s, datos)
    h = _crea_historia(s, paciente, medico_id, parsed["historia"], nombre_archivo)
    logger.info(
        "Documento %s importado: paciente %s (%s), historia %s",
        nombre_archivo, paciente.id, "nuevo" if creado else "existente", h.id,
    )
    return {
        "paciente_id": paciente.id,
        "historia_id": h.id,
        "paciente_creado": creado,
        "paciente": {"nombres": paciente.nombres, "apellidos": paciente.apellidos},
    }


def importar_documento(nombre_archivo: str | None, contenido: bytes, medico_id: int) -> dict[str, Any]:
    """Importa un documento: paciente (alta o actualización) e historia, en una sola transacción."""
    with db_session() as s:
        obtener_o_404(s, Medico, medico_id, "Médico no encontrado")
        resultado = _importa(s, nombre_archivo or "", contenido, medico_id)
    resultado["message"] = "Documento importado exitosamente"
    return resultado


def importar_documentos(archivos: list[tuple[str, bytes]], medico_id: int) -> dict[str, Any]:
    """
    Importa varios documentos. Cada archivo va en su propia transacción:
    un documento ilegible no impide importar los demás.
    """
    if not archivos:
        raise DatosInvalidos("No se proporcionaron archivos")
    with db_session() as s:
        obtener_o_404(s, Medico, medico_id, "Médico no encontrado")

    resultados: dict[str, Any] = {
        "total": len(archivos),
        "exitosos": 0,
        "fallidos": 0,
        "errores": [],
        "pacientes_creados": 0,
        "pacientes_actualizados": 0,
        "historias_creadas": 0,
    }
    for nombre_archivo, contenido in archivos:
        try:
            with db_session() as s:
                r = _importa(s, nombre_archivo, contenido, medico_id)
        except DatosInvalidos as e:
            logger.warning("No se pudo importar %s: %s", nombre_archivo, e.message)
            resultados["fallidos"] += 1
            resultados["errores"].append({"archivo": nombre_archivo, "error": e.message})
            continue
        resultados["exitosos"] += 1
        resultados["historias_creadas"] += 1
        if r["paciente_creado"]:
            resultados["pacientes_creados"] += 1
        else:
            resultados["pacientes_actualizados"] += 1
    return resultados
