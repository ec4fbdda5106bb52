"""
Servicio de notificaciones por email.

Plantillas Jinja2 ({{variable}}, HTML escapado) y envío vía SMTP.
Ningún error de envío debe interrumpir la operación que lo dispara:
enviar_email devuelve False y deja el detalle en el log.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from jinja2 import Environment, select_autoescape
from markupsafe import Markup

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Adjunto:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


@dataclass(frozen=True)
class PlantillaEmail:
    subject: str
    html: str


def _vacio_si_none(valor):
    return "" if valor is None else valor


# cuerpo HTML: los datos de paciente, motivo o título se escapan
_html_env = Environment(autoescape=select_autoescape(default_for_string=True), finalize=_vacio_si_none)
# asunto: texto plano
_texto_env = Environment(autoescape=False, finalize=_vacio_si_none)


def render(texto: str, variables: dict) -> str:
    """Renderiza una plantilla HTML; las variables ausentes quedan vacías."""
    return _html_env.from_string(texto).render(**variables)


def render_asunto(texto: str, variables: dict) -> str:
    return " ".join(_texto_env.from_string(texto).render(**variables).split())


# =========================
# Plantillas
# =========================
_BASE = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #366092;">{{clinica_nombre}}</h2>
  {{cuerpo}}
  <p style="color: #888; font-size: 12px;">Este es un mensaje automático, por favor no responda.</p>
</div>
"""

PLANTILLAS: dict[str, PlantillaEmail] = {
    "consulta_confirmacion_paciente": PlantillaEmail(
        subject="Confirmación de Consulta - {{clinica_nombre}}",
        html=(
            "<p>Estimado(a) {{paciente_nombre}},</p>"
            "<p>Su consulta ha sido agendada con {{medico_nombre}} ({{especialidad}}).</p>"
            "<p><strong>Fecha:</strong> {{fecha}}<br><strong>Hora:</strong> {{hora}}<br>"
            "<strong>Motivo:</strong> {{motivo}}</p>"
        ),
    ),
    "consulta_confirmacion_medico": PlantillaEmail(
        subject="Nueva Consulta Agendada - {{clinica_nombre}}",
        html=(
            "<p>Dr(a). {{medico_nombre}},</p>"
            "<p>Se ha agendado una consulta con el paciente {{paciente_nombre}}.</p>"
            "<p><strong>Fecha:</strong> {{fecha}}<br><strong>Hora:</strong> {{hora}}<br>"
            "<strong>Motivo:</strong> {{motivo}}</p>"
        ),
    ),
    "consulta_cancelacion": PlantillaEmail(
        subject="Consulta Cancelada - {{clinica_nombre}}",
        html=(
            "<p>Estimado(a) {{paciente_nombre}},</p>"
            "<p>Su consulta del {{fecha}} a las {{hora}} con {{medico_nombre}} ha sido cancelada.</p>"
            "<p><strong>Motivo:</strong> {{motivo_cancelacion}}</p>"
        ),
    ),
    "consulta_reagendada": PlantillaEmail(
        subject="Consulta Reagendada - {{clinica_nombre}}",
        html=(
            "<p>Estimado(a) {{paciente_nombre}},</p>"
            "<p>Su consulta con {{medico_nombre}} fue reagendada.</p>"
            "<p><strong>Nueva fecha:</strong> {{fecha}}<br><strong>Nueva hora:</strong> {{hora}}</p>"
        ),
    ),
    "consulta_finalizada": PlantillaEmail(
        subject="Consulta Finalizada - {{clinica_nombre}}",
        html=(
            "<p>Estimado(a) {{paciente_nombre}},</p>"
            "<p>Gracias por su visita. Su consulta del {{fecha}} con {{medico_nombre}} ha sido finalizada.</p>"
            "<p><strong>Total USD:</strong> {{total_usd}}<br><strong>Total VES:</strong> {{total_ves}}</p>"
        ),
    ),
    "informe_envio": PlantillaEmail(
        subject="Informe Médico {{numero_informe}} - {{clinica_nombre}}",
        html=(
            "<p>Estimado(a) {{paciente_nombre}},</p>"
            "<p>Adjunto encontrará su informe médico <strong>{{titulo}}</strong> "
            "emitido por {{medico_nombre}} el {{fecha_emision}}.</p>"
        ),
    ),
}


# =========================
# Envío
# =========================
def _smtp_send(msg: MIMEMultipart, destinatarios: list[str]) -> None:
    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=15) as server:
        if config.SMTP_USE_TLS:
            server.starttls()
        if config.SMTP_USER and config.SMTP_PASSWORD:
            server.login(config.SMTP_USER, config.SMTP_PASSWORD)
        server.sendmail(config.EMAIL_FROM, destinatarios, msg.as_string())


def enviar_email(
    to: str | list[str],
    subject: str,
    html: str,
    adjuntos: list[Adjunto] | None = None,
) -> bool:
    destinatarios = [to] if isinstance(to, str) else list(to)
    destinatarios = [d for d in destinatarios if d]
    if not destinatarios:
        logger.info("Email '%s' omitido: sin destinatarios", subject)
        return False

    if not config.EMAIL_ENABLED:
        logger.info("Email deshabilitado, no se envía '%s' a %s", subject, ", ".join(destinatarios))
        return False

    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = config.EMAIL_FROM
    msg["To"] = ", ".join(destinatarios)
    msg.attach(MIMEText(html, "html", "utf-8"))

    for adj in adjuntos or []:
        maintype, _, subtype = adj.mime_type.partition("/")
        part = MIMEBase(maintype, subtype or "octet-stream")
        part.set_payload(adj.content)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", f'attachment; filename="{adj.filename}"')
        msg.attach(part)

    try:
        _smtp_send(msg, destinatarios)
    except (smtplib.SMTPException, OSError):
        logger.exception("Error enviando email '%s' a %s", subject, ", ".join(destinatarios))
        return False

    logger.info("Email '%s' enviado a %s", subject, ", ".join(destinatarios))
    return True


def enviar_plantilla(
    nombre: str,
    to: str | list[str] | None,
    variables: dict,
    adjuntos: list[Adjunto] | None = None,
) -> bool:
    plantilla = PLANTILLAS[nombre]
    variables = {"clinica_nombre": config.CLINICA_NOMBRE, **variables}
    cuerpo = render(plantilla.html, variables)
    html = render(_BASE, {**variables, "cuerpo": Markup(cuerpo)})
    return enviar_email(to or [], render_asunto(plantilla.subject, variables), html, adjuntos)


# =========================
# Notificaciones de consulta
# =========================
def datos_consulta_email(consulta) -> dict:
    """Variables de plantilla a partir de una Consulta con paciente/medico cargados."""
    medico = consulta.medico
    especialidad = medico.especialidad.nombre_especialidad if medico and medico.especialidad else ""
    return {
        "paciente_nombre": consulta.paciente.nombre_completo,
        "paciente_email": consulta.paciente.email,
        "medico_nombre": medico.nombre_completo if medico else "",
        "medico_email": medico.email if medico else None,
        "especialidad": especialidad,
        "fecha": consulta.fecha_pautada.strftime("%d/%m/%Y"),
        "hora": consulta.hora_pautada.strftime("%H:%M"),
        "motivo": consulta.motivo_consulta,
        "motivo_cancelacion": consulta.motivo_cancelacion or "",
    }


def notifica_consulta_agendada(datos: dict) -> None:
    # Solo si paciente y médico tienen email
    if not datos.get("paciente_email") or not datos.get("medico_email"):
        logger.info("Confirmación de consulta no enviada: falta email de paciente o médico")
        return
    enviar_plantilla("consulta_confirmacion_paciente", datos["paciente_email"], datos)
    enviar_plantilla("consulta_confirmacion_medico", datos["medico_email"], datos)


def notifica_consulta_cancelada(datos: dict) -> None:
    enviar_plantilla("consulta_cancelacion", [datos.get("paciente_email"), datos.get("medico_email")], datos)


def notifica_consulta_reagendada(datos: dict) -> None:
    enviar_plantilla("consulta_reagendada", [datos.get("paciente_email"), datos.get("medico_email")], datos)


def notifica_consulta_finalizada(datos: dict) -> None:
    enviar_plantilla("consulta_finalizada", datos.get("paciente_email"), datos)
