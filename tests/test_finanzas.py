import io

import pytest
from openpyxl import load_workbook

from clinica_backend.consultas import finalizar_consulta, obtener_consulta
from clinica_backend.errors import DatosInvalidos, NoEncontrado
from clinica_backend.finanzas import (
    consultas_financieras,
    exportar_reporte,
    exportar_reporte_avanzado,
    marcar_pagada,
    resumen_financiero,
)
from clinica_backend.models import EstadoConsulta as E
from clinica_backend.tiempo import hoy


@pytest.fixture
def finalizadas(nueva_consulta, servicio):
    """Una consulta cobrada en USD, una en VES y una mixta; más una sin líneas."""
    ids = []
    for lineas in (
        [{"servicio_id": servicio, "monto_pagado": 50, "moneda": "USD"}],
        [{"servicio_id": servicio, "monto_pagado": 1800, "moneda": "VES"}],
        [
            {"servicio_id": servicio, "monto_pagado": 30, "moneda": "USD"},
            {"servicio_id": servicio, "monto_pagado": 400, "moneda": "VES"},
        ],
    ):
        cid = nueva_consulta(estado=E.COMPLETADA)
        finalizar_consulta(cid, lineas)
        ids.append(cid)
    ids.append(nueva_consulta())
    return ids


def test_consultas_financieras_todas(finalizadas):
    r = consultas_financieras({}, moneda="TODAS")

    assert r["paginacion"] is None
    assert len(r["data"]) == 4
    filas = {f["id"]: f for f in r["data"]}
    assert filas[finalizadas[0]]["total_consulta"] == 50.0
    assert filas[finalizadas[0]]["moneda_principal"] == "USD"
    assert filas[finalizadas[0]]["estado_consulta"] == "pagado"
    assert filas[finalizadas[0]]["paciente_cedula"] == "V-12345678"
    assert filas[finalizadas[0]]["especialidad_nombre"] == "Ginecología"
    assert filas[finalizadas[3]]["moneda_principal"] == "N/A"
    assert filas[finalizadas[3]]["estado_consulta"] == "pendiente"


def test_consultas_financieras_por_moneda(finalizadas):
    r = consultas_financieras({}, moneda="usd")

    assert {f["id"] for f in r["data"]} == {finalizadas[0], finalizadas[2]}
    mixta = next(f for f in r["data"] if f["id"] == finalizadas[2])
    assert [s["moneda_pago"] for s in mixta["servicios"]] == ["USD"]
    assert mixta["total_consulta"] == 30.0


def test_consultas_financieras_paginadas(finalizadas):
    r = consultas_financieras({}, {"pagina": 2, "limite": 3}, "TODAS")

    assert len(r["data"]) == 1
    assert r["paginacion"] == {
        "pagina_actual": 2,
        "limite": 3,
        "total_registros": 4,
        "total_paginas": 2,
        "tiene_siguiente": False,
        "tiene_anterior": True,
    }


def test_consultas_financieras_estado_pago(finalizadas):
    assert len(consultas_financieras({"estado_pago": "pendiente"})["data"]) == 1
    with pytest.raises(DatosInvalidos):
        consultas_financieras({"estado_pago": "otro"})


def test_moneda_invalida(finalizadas):
    with pytest.raises(DatosInvalidos, match="TODAS, USD o VES"):
        consultas_financieras({}, moneda="EUR")


def test_resumen_financiero(finalizadas):
    r = resumen_financiero({}, "VES")

    assert r["moneda_filtrada"] == "VES"
    assert r["total_consultas"] == 2
    assert r["total_ingresos"] == 2200.0
    assert r["total_por_especialidad"] == {"Ginecología": 2200.0}
    assert r["total_por_medico"] == {"Ana Rodríguez": 2200.0}
    assert r["consultas_pagadas"] == 2

    usd = r["estadisticas_por_moneda"]["USD"]
    assert usd["total_consultas"] == 2
    assert usd["total_ingresos"] == 80.0
    assert usd["promedio_por_consulta"] == 40.0


def test_resumen_filtra_por_fecha(finalizadas):
    r = resumen_financiero({"fecha_desde": hoy().isoformat(), "fecha_hasta": hoy().isoformat()})
    assert r["total_consultas"] == 4
    futuro = resumen_financiero({"fecha_desde": "2999-01-01"})
    assert futuro["total_consultas"] == 0
    assert futuro["estadisticas_por_moneda"] == {}


def test_marcar_pagada(nueva_consulta):
    cid = nueva_consulta()
    r = marcar_pagada(cid, hoy().isoformat(), "Pago móvil", "Ref 0042")

    assert r == {"message": "Consulta marcada como pagada exitosamente"}
    c = obtener_consulta(cid)
    assert c["metodo_pago"] == "Pago móvil"
    assert c["observaciones_financieras"] == "Ref 0042"


def test_marcar_pagada_validaciones(nueva_consulta):
    with pytest.raises(DatosInvalidos, match="requeridos"):
        marcar_pagada(nueva_consulta(), None, "Efectivo")
    with pytest.raises(NoEncontrado):
        marcar_pagada(9999, "2024-01-01", "Efectivo")


def test_exportar_excel(finalizadas):
    exp = exportar_reporte("excel", {"moneda": "USD"})

    assert exp.filename.startswith("reporte-financiero-")
    assert exp.filename.endswith(".xlsx")
    ws = load_workbook(io.BytesIO(exp.contenido)).active
    assert ws.title == "Reporte Financiero"
    assert ws["A1"].value == "Fecha"
    assert ws["H1"].value == "Estado Pago"

    valores = [row for row in ws.iter_rows(values_only=True)]
    assert valores[1][6] == "USD"
    totales = next(row for row in valores if row[0] == "TOTALES:")
    assert totales[6] == "USD: 80.00"
    assert any(row[0] == "Moneda filtrada: USD" for row in valores)


def test_exportar_pdf(finalizadas):
    exp = exportar_reporte("PDF", {})

    assert exp.media_type == "application/pdf"
    assert exp.contenido.startswith(b"%PDF")


def test_exportar_formato_no_soportado():
    with pytest.raises(DatosInvalidos, match="Formato no soportado"):
        exportar_reporte("csv", {})


def test_exportar_avanzado(finalizadas):
    exp = exportar_reporte_avanzado({}, {"formato": "excel", "moneda": "VES"})
    assert exp.filename.startswith("reporte-financiero-avanzado-")

    with pytest.raises(DatosInvalidos, match="Opciones son requeridas"):
        exportar_reporte_avanzado({}, None)
