import pytest
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph
from sqlalchemy import select

from clinica_backend import informes
from clinica_backend.auth_models import RolUsuario
from clinica_backend.db import db_session
from clinica_backend.errors import DatosInvalidos, NoEncontrado, PermisoDenegado
from clinica_backend.informes import (
    actualiza_configuracion,
    actualiza_informe,
    crea_informe,
    elimina_informe,
    enviar_informe,
    envios_de_informe,
    estadisticas_informes,
    estadisticas_por_medico,
    estadisticas_todos_medicos,
    firmar_informe,
    formatea_numero,
    get_informe,
    hash_contenido,
    lista_informes,
    obtener_configuracion,
    pdf_informe,
    verificar_firma,
)
from clinica_backend.models import InformeMedico, Paciente
from clinica_backend.reportes import html_a_parrafos


@pytest.fixture
def informe(paciente, medico):
    def _crea(**extra):
        datos = {
            "titulo": "Informe ecográfico",
            "tipo_informe": "ecografia",
            "contenido": "<p>Útero en anteversión.</p><p>Ovarios de <strong>aspecto normal</strong>.</p>",
            "paciente_id": paciente,
            "medico_id": medico,
            **extra,
        }
        return crea_informe(datos)

    return _crea


def test_formatea_numero():
    assert formatea_numero("INF", 7) == "INF-000007"
    assert hash_contenido("abc") == hash_contenido("abc") != hash_contenido("abd")


def test_numeracion_secuencial(informe):
    primero = informe()
    segundo = informe()

    assert primero["numero_informe"] == "INF-000001"
    assert segundo["numero_informe"] == "INF-000002"
    assert primero["estado"] == "borrador"
    assert obtener_configuracion()["contador_actual"] == 2


def test_numeracion_independiente_por_clinica(informe, monkeypatch):
    informe()
    monkeypatch.setattr(informes, "CLINICA_ALIAS", "otra")

    i = informe()

    assert i["numero_informe"] == "INF-000001"
    assert obtener_configuracion()["contador_actual"] == 1
    with db_session() as s:
        numeros = s.scalars(select(InformeMedico.numero_informe)).all()
    assert numeros == ["INF-000001", "INF-000001"]


def test_prefijo_configurable(informe):
    actualiza_configuracion({"prefijo_numero": "fm", "pie_pagina": "Av. Principal"})
    assert informe()["numero_informe"] == "FM-000001"
    assert obtener_configuracion()["pie_pagina"] == "Av. Principal"


def test_crea_informe_requeridos(paciente):
    with pytest.raises(DatosInvalidos, match="titulo"):
        crea_informe({"tipo_informe": "x", "contenido": "y", "paciente_id": paciente, "medico_id": 1})


def test_crea_informe_medico_usa_su_propio_id(paciente, otro_medico, medico, usuario):
    u = usuario(RolUsuario.MEDICO.value)
    i = crea_informe(
        {"titulo": "t", "tipo_informe": "x", "contenido": "c", "paciente_id": paciente, "medico_id": otro_medico},
        u,
    )
    assert i["medico_id"] == medico
    assert i["creado_por"] == u.id


def test_firmar_y_verificar(informe):
    i = informe()

    firmado = firmar_informe(i["id"], certificado_digital="CERT-01", ip_firma="10.0.0.5", user_agent="pytest")

    assert firmado["estado"] == "firmado"
    assert firmado["firmado"] is True
    assert firmado["firma"]["firma_hash"] == hash_contenido(i["contenido"])
    v = verificar_firma(i["id"])
    assert v["valida"] is True
    assert v["certificado_digital"] == "CERT-01"


def test_verificar_firma_contenido_alterado(informe):
    i = informe()
    firmar_informe(i["id"])
    with db_session() as s:
        s.get(InformeMedico, i["id"]).contenido = "<p>Otro texto</p>"

    assert verificar_firma(i["id"])["valida"] is False


def test_verificar_sin_firma(informe):
    assert verificar_firma(informe()["id"]) == {
        "valida": False, "firma_hash": "", "fecha_firma": None, "certificado_digital": "",
    }


def test_firmar_dos_veces(informe):
    i = informe()
    firmar_informe(i["id"])
    with pytest.raises(DatosInvalidos, match="ya está firmado"):
        firmar_informe(i["id"])


def test_firmar_solo_autor_o_admin(informe, otro_medico, usuario):
    i = informe(medico_id=otro_medico)
    with pytest.raises(PermisoDenegado):
        firmar_informe(i["id"], usuario(RolUsuario.MEDICO.value))
    with pytest.raises(PermisoDenegado):
        firmar_informe(i["id"], usuario(RolUsuario.SECRETARIA.value))
    assert firmar_informe(i["id"], usuario(RolUsuario.ADMINISTRADOR.value))["estado"] == "firmado"


def test_informe_firmado_no_se_modifica(informe):
    i = informe()
    firmar_informe(i["id"])
    with pytest.raises(DatosInvalidos, match="firmado o enviado"):
        actualiza_informe(i["id"], {"titulo": "Nuevo"})
    with pytest.raises(DatosInvalidos, match="borrador"):
        elimina_informe(i["id"])


def test_actualiza_informe(informe):
    i = informe()
    r = actualiza_informe(i["id"], {"titulo": "Control", "estado": "finalizado"})
    assert r["titulo"] == "Control"
    assert r["estado"] == "finalizado"

    with pytest.raises(DatosInvalidos, match="se asignan al firmar"):
        actualiza_informe(i["id"], {"estado": "firmado"})


def test_elimina_informe(informe):
    i = informe()
    elimina_informe(i["id"])
    with pytest.raises(NoEncontrado):
        get_informe(i["id"])


def test_pdf_informe(informe):
    i = informe()
    contenido, filename = pdf_informe(i["id"])
    assert filename == "INF-000001.pdf"
    assert contenido.startswith(b"%PDF")


def test_pdf_informe_con_formato_anidado(informe):
    i = informe(contenido="<p><strong>Diagnóstico:<br>Quiste ovárico</strong></p>")
    contenido, _ = pdf_informe(i["id"])
    assert contenido.startswith(b"%PDF")


def test_html_a_parrafos_cierra_formato_en_cada_parrafo():
    assert html_a_parrafos("<p><strong>Diagnóstico:<br>Quiste ovárico</strong></p>") == [
        "<b>Diagnóstico:<br/>Quiste ovárico</b>"
    ]
    assert html_a_parrafos("<p>A &amp; B<img src=x onerror=y></p>") == ["A &amp; B"]


@pytest.mark.parametrize(
    "contenido",
    [
        "<p><strong>Dx:<br>Quiste</strong></p>",
        "<p>Uno <b>dos</p><p>tres</b> cuatro</p>",
        "<ul><li><em>Eco</em> normal</li><li>Control</li></ul>",
        "Texto plano\n\nSegundo párrafo con a < b & c",
        "<div onclick='x'>Hola <img src=x onerror=y>&nbsp;mundo</div>",
    ],
)
def test_html_a_parrafos_genera_marcado_valido(contenido):
    estilo = getSampleStyleSheet()["Normal"]
    parrafos = html_a_parrafos(contenido)

    assert parrafos
    for p in parrafos:
        # Paragraph analiza el marcado al construirse
        Paragraph(p, estilo)
        assert "<img" not in p
        assert "onclick" not in p


def test_enviar_por_email(informe, emails):
    i = informe()

    envio = enviar_informe(i["id"])

    assert envio["estado_envio"] == "enviado"
    assert envio["destinatario"] == "maria@example.com"
    assert "INF-000001" in emails[0]["subject"]
    adjuntos = [p for p in emails[0]["msg"].walk() if p.get_filename()]
    assert [p.get_filename() for p in adjuntos] == ["INF-000001.pdf"]
    assert adjuntos[0].get_payload(decode=True).startswith(b"%PDF")

    actual = get_informe(i["id"])
    assert actual["estado"] == "enviado"
    assert actual["total_envios"] == 1


def test_enviar_email_deshabilitado_queda_fallido(informe):
    i = informe()
    envio = enviar_informe(i["id"], destinatario="otro@example.com")

    assert envio["estado_envio"] == "fallido"
    assert get_informe(i["id"])["estado"] == "borrador"


def test_enviar_email_sin_destinatario(informe, emails):
    i = informe()
    with db_session() as s:
        s.get(Paciente, i["paciente_id"]).email = None

    with pytest.raises(DatosInvalidos, match="no tiene email"):
        enviar_informe(i["id"])
    assert emails == []
    assert envios_de_informe(i["id"]) == []


def test_enviar_presencial(informe):
    i = informe()
    envio = enviar_informe(i["id"], metodo_envio="presencial", observaciones="Retirado en recepción")

    assert envio["estado_envio"] == "entregado"
    assert envio["destinatario"] == "presencial"
    historial = envios_de_informe(i["id"])
    assert historial[0]["fecha_entrega"] is not None
    assert historial[0]["observaciones"] == "Retirado en recepción"


@pytest.mark.parametrize("metodo,mensaje", [("fax", "no válido"), ("whatsapp", "no soportado")])
def test_enviar_metodo_invalido(informe, metodo, mensaje):
    with pytest.raises(DatosInvalidos, match=mensaje):
        enviar_informe(informe()["id"], metodo_envio=metodo)


def test_lista_informes_filtros(informe):
    informe()
    i2 = informe(titulo="Resultado de citología", tipo_informe="citologia")
    firmar_informe(i2["id"])

    assert len(lista_informes()) == 2
    assert [i["id"] for i in lista_informes({"estado": "firmado"})] == [i2["id"]]
    assert [i["id"] for i in lista_informes({"busqueda": "citolog"})] == [i2["id"]]
    assert [i["id"] for i in lista_informes({"tipo_informe": "citologia"})] == [i2["id"]]
    assert len(lista_informes({"limit": 1})) == 1


def test_estadisticas(informe, medico):
    informe()
    firmar_informe(informe()["id"])

    assert estadisticas_informes() == {
        "total_informes": 2,
        "informes_firmados": 1,
        "informes_sin_firma": 1,
        "porcentaje_firmados": 50.0,
    }
    assert estadisticas_por_medico(medico)["medico_nombres"] == "Ana"
    assert [e["medico_id"] for e in estadisticas_todos_medicos()] == [medico]
