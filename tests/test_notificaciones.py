from clinica_backend import config
from clinica_backend.notificaciones import enviar_plantilla, render, render_asunto


def _html(correo):
    parte = next(p for p in correo["msg"].walk() if p.get_content_type() == "text/html")
    return parte.get_payload(decode=True).decode("utf-8")


def test_render_variables_ausentes_quedan_vacias():
    assert render("<p>{{a}}|{{b}}</p>", {"a": None}) == "<p>|</p>"
    assert render_asunto("Informe  {{numero}} ", {"numero": "INF-000001"}) == "Informe INF-000001"


def test_plantilla_escapa_datos_del_paciente(emails):
    ok = enviar_plantilla(
        "consulta_cancelacion",
        "maria@example.com",
        {
            "paciente_nombre": "<script>alert(1)</script>",
            "motivo_cancelacion": "<img src=x onerror=y>",
            "fecha": "01/02/2025",
            "hora": "10:00",
            "medico_nombre": "Ana Rodríguez",
        },
    )

    assert ok is True
    cuerpo = _html(emails[0])
    assert "<script>" not in cuerpo
    assert "<img" not in cuerpo
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in cuerpo
    assert "&lt;img src=x onerror=y&gt;" in cuerpo
    # el marcado propio de la plantilla se conserva
    assert "<strong>Motivo:</strong>" in cuerpo


def test_asunto_no_se_escapa(emails, monkeypatch):
    monkeypatch.setattr(config, "CLINICA_NOMBRE", "Salud & Vida")

    enviar_plantilla("informe_envio", "maria@example.com", {"numero_informe": "INF-000001", "titulo": "Eco <1>"})

    assert emails[0]["subject"] == "Informe Médico INF-000001 - Salud & Vida"
    cuerpo = _html(emails[0])
    assert "Eco &lt;1&gt;" in cuerpo
