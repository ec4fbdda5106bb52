import io
from datetime import timedelta

from docx import Document

from clinica_backend.consultas import finalizar_consulta
from clinica_backend.models import EstadoConsulta as E
from clinica_backend.tiempo import hoy

API = "/api/v1"


def _docx(*lineas: str) -> bytes:
    doc = Document()
    for linea in lineas:
        doc.add_paragraph(linea)
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def test_health(cliente):
    r = cliente("administrador").get(f"{API}/health")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "ok"
    assert r.json()["data"]["clinica"] == "femimed"


def test_rol_sin_acceso(cliente):
    r = cliente("secretaria").post(f"{API}/finanzas/resumen", json={})
    assert r.status_code == 403
    assert r.json() == {"success": False, "error": {"message": "Acceso denegado"}}


def test_no_encontrado(cliente):
    r = cliente("administrador").get(f"{API}/consultas/9999")
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Consulta no encontrada"


def test_datos_invalidos_del_payload(cliente):
    r = cliente("administrador").post(f"{API}/consultas", json={"fecha_pautada": "no-es-fecha"})
    assert r.status_code == 400
    assert r.json()["error"]["message"].startswith("Datos inválidos:")


def test_crea_y_lista_consultas(cliente, paciente, medico):
    c = cliente("secretaria")
    manana = (hoy() + timedelta(days=1)).isoformat()

    r = c.post(f"{API}/consultas", json={
        "paciente_id": paciente,
        "medico_id": medico,
        "motivo_consulta": "Primera consulta",
        "fecha_pautada": manana,
        "hora_pautada": "08:30",
    })
    assert r.status_code == 201
    assert r.json()["success"] is True
    assert r.json()["data"]["estado_consulta"] == "agendada"

    lista = c.get(f"{API}/consultas", params={"estado": "agendada"}).json()
    assert len(lista["data"]) == 1
    assert lista["paginacion"]["total"] == 1


def test_cancelar_sin_motivo(cliente, nueva_consulta):
    cid = nueva_consulta()
    r = cliente("secretaria").put(f"{API}/consultas/{cid}/cancelar", json={})
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "El motivo de cancelación es requerido"


def test_completar_solo_medico_o_admin(cliente, nueva_consulta):
    cid = nueva_consulta()
    assert cliente("secretaria").put(f"{API}/consultas/{cid}/completar").status_code == 403
    r = cliente("medico").put(f"{API}/consultas/{cid}/completar")
    assert r.status_code == 200
    assert r.json()["data"]["estado_consulta"] == "completada"


def test_finalizar(cliente, nueva_consulta, servicio):
    cid = nueva_consulta(estado=E.COMPLETADA)

    r = cliente("secretaria").put(f"{API}/consultas/{cid}/finalizar", json={
        "servicios": [
            {"servicio_id": servicio, "monto_pagado": 50, "moneda": "USD"},
            {"servicio_id": -1, "monto_pagado": 2000, "moneda": "VES"},
        ],
        "metodo_pago": "Pago móvil",
    })

    assert r.status_code == 200
    body = r.json()
    assert body["message"] == "Consulta finalizada exitosamente"
    assert body["data"]["totales"] == {"cantidad_servicios": 2, "total_usd": 50.0, "total_ves": 2000.0}


def test_finalizar_rol_medico(cliente, nueva_consulta, servicio):
    cid = nueva_consulta(estado=E.COMPLETADA)
    r = cliente("medico").put(f"{API}/consultas/{cid}/finalizar", json={
        "servicios": [{"servicio_id": servicio, "monto_pagado": 50, "moneda": "USD"}],
    })
    assert r.status_code == 403


def test_finalizar_monto_nan(cliente, nueva_consulta, servicio):
    cid = nueva_consulta(estado=E.COMPLETADA)
    cuerpo = '{"servicios": [{"servicio_id": %d, "monto_pagado": NaN, "moneda": "USD"}]}' % servicio

    r = cliente("secretaria").put(
        f"{API}/consultas/{cid}/finalizar",
        content=cuerpo,
        headers={"Content-Type": "application/json"},
    )

    assert r.status_code == 400
    assert r.json()["success"] is False


def test_finanzas_consultas_y_exportacion(cliente, nueva_consulta, servicio):
    cid = nueva_consulta(estado=E.COMPLETADA)
    c = cliente("finanzas")
    finalizar_consulta(cid, [{"servicio_id": servicio, "monto_pagado": 50, "moneda": "USD"}])

    r = c.post(f"{API}/finanzas/consultas", json={"paginacion": {"pagina": 1, "limite": 10}, "moneda": "USD"})
    assert r.status_code == 200
    assert r.json()["data"][0]["total_consulta"] == 50.0
    assert r.json()["paginacion"]["total_registros"] == 1

    exp = c.post(f"{API}/finanzas/exportar", json={"formato": "excel", "filtros": {}})
    assert exp.status_code == 200
    assert exp.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert 'filename="reporte-financiero-' in exp.headers["content-disposition"]

    pdf = c.post(f"{API}/finanzas/exportar-avanzado", json={"filtros": {}, "opciones": {"formato": "pdf"}})
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")


def test_finanzas_marcar_pagada(cliente, nueva_consulta):
    cid = nueva_consulta()
    r = cliente("finanzas").post(
        f"{API}/finanzas/consultas/{cid}/pagar",
        json={"fecha_pago": hoy().isoformat(), "metodo_pago": "Transferencia"},
    )
    assert r.status_code == 200
    assert r.json()["message"] == "Consulta marcada como pagada exitosamente"


def test_historico_medico_usa_su_id(cliente, paciente, medico, otro_medico):
    r = cliente("medico").post(f"{API}/historico", json={
        "paciente_id": paciente,
        "medico_id": otro_medico,
        "motivo_consulta": "<p>Control</p>",
    })
    assert r.status_code == 201
    assert r.json()["data"]["medico_id"] == medico


def test_historico_consulta_inexistente(cliente, paciente, medico):
    r = cliente("medico").post(f"{API}/historico", json={
        "paciente_id": paciente,
        "medico_id": medico,
        "consulta_id": 9999,
        "motivo_consulta": "<p>Control</p>",
    })
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Consulta no encontrada"


def test_plantillas_historia_del_medico(cliente):
    c = cliente("medico")

    creada = c.post(f"{API}/plantillas-historias", json={
        "nombre": "Control ginecológico",
        "motivo_consulta_template": "<p>Control anual</p>",
    })
    assert creada.status_code == 201
    assert creada.json()["message"] == "Plantilla creada exitosamente"
    pid = creada.json()["data"]["id"]

    r = c.put(f"{API}/plantillas-historias/{pid}", json={"diagnostico_template": "<p>Sin hallazgos</p>"})
    assert r.status_code == 200
    assert r.json()["data"]["diagnostico_template"] == "<p>Sin hallazgos</p>"

    assert [p["id"] for p in c.get(f"{API}/plantillas-historias").json()["data"]] == [pid]
    assert c.delete(f"{API}/plantillas-historias/{pid}").json()["message"] == "Plantilla eliminada exitosamente"
    assert c.get(f"{API}/plantillas-historias").json()["data"] == []
    assert len(c.get(f"{API}/plantillas-historias", params={"activas": "false"}).json()["data"]) == 1


def test_plantillas_historia_requieren_medico(cliente):
    r = cliente("secretaria").get(f"{API}/plantillas-historias")
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Médico no autenticado"


def test_remision_medico_como_remitente(cliente, paciente, medico, otro_medico):
    r = cliente("medico").post(f"{API}/remisiones", json={
        "paciente_id": paciente,
        "medico_remitido_id": otro_medico,
        "motivo_remision": "Valoración mamaria",
    })
    assert r.status_code == 201
    assert r.json()["data"]["medico_remitente_id"] == medico
    assert r.json()["message"] == "Remisión creada exitosamente"


def test_informe_firma_y_pdf(cliente, paciente):
    c = cliente("medico")
    creado = c.post(f"{API}/informes-medicos", json={
        "titulo": "Informe de control",
        "tipo_informe": "control",
        "contenido": "<p>Sin hallazgos</p>",
        "paciente_id": paciente,
    }).json()["data"]

    firmado = c.post(f"{API}/informes-medicos/{creado['id']}/firmar", json={})
    assert firmado.status_code == 200
    assert firmado.json()["data"]["firma"]["firma_hash"]
    assert c.get(f"{API}/informes-medicos/{creado['id']}/verificar-firma").json()["data"]["valida"] is True

    pdf = c.get(f"{API}/informes-medicos/{creado['id']}/pdf")
    assert pdf.headers["content-type"] == "application/pdf"
    assert 'filename="INF-000001.pdf"' in pdf.headers["content-disposition"]


def test_importacion_single(cliente, medico):
    r = cliente("administrador").post(
        f"{API}/importacion/single",
        files={"archivo": ("historia.docx", _docx("Nombre ROSA MARTINEZ Edad 29", "PLAN: Control anual"))},
        data={"medico_id": str(medico)},
    )
    assert r.status_code == 201
    assert r.json()["data"]["paciente"] == {"nombres": "Rosa", "apellidos": "Martinez"}


def test_importacion_sin_medico(cliente):
    r = cliente("secretaria").post(
        f"{API}/importacion/single",
        files={"archivo": ("historia.docx", _docx("Nombre ROSA MARTINEZ"))},
    )
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "ID del médico es requerido para asociar la historia médica"


def test_importacion_multiple(cliente, medico):
    r = cliente("medico").post(
        f"{API}/importacion/multiple",
        files=[
            ("archivos", ("a.docx", _docx("Nombre ROSA MARTINEZ", "MOTIVO DE CONSULTA: control"))),
            ("archivos", ("b.txt", b"texto")),
        ],
    )
    assert r.status_code == 200
    assert r.json()["data"]["exitosos"] == 1
    assert r.json()["data"]["fallidos"] == 1
