import pytest

from clinica_backend.consultas import (
    eliminar_consulta,
    marcar_completada_por_historico,
    obtener_consulta,
    reagendar_consulta,
)
from clinica_backend.db import db_session
from clinica_backend.errors import DatosInvalidos, NoEncontrado
from clinica_backend.historico import (
    actualiza_historico,
    actualiza_plantilla,
    crea_historico,
    crea_plantilla,
    elimina_historico,
    elimina_plantilla,
    get_historico,
    get_plantilla,
    historico_filtrado,
    historico_paciente_medico,
    lista_plantillas,
    medicos_con_historia,
    tiene_historia_por_especialidad,
    ultimo_historico_paciente,
)
from clinica_backend.models import EstadoConsulta as E
from clinica_backend.models import Paciente, PlantillaHistoria, Sexo
from clinica_backend.remisiones import (
    actualiza_estado_remision,
    crea_remision,
    estadisticas_remisiones,
    remisiones_por_estado,
    remisiones_por_medico,
)
from clinica_backend.services import elimina_medico
from clinica_backend.tiempo import hoy


def _historia(paciente, medico, **extra):
    return {
        "paciente_id": paciente,
        "medico_id": medico,
        "motivo_consulta": "<p>Dolor pélvico</p>",
        "diagnostico": "<p>Quiste simple</p>",
        **extra,
    }


# =========================
# Historico
# =========================
def test_crea_historico_completa_la_consulta(nueva_consulta, paciente, medico):
    cid = nueva_consulta()

    h = crea_historico(_historia(paciente, medico))

    assert h["consulta_id"] == cid
    assert h["fecha_consulta"] == hoy().isoformat()
    assert h["paciente_nombre"] == "María González"
    assert h["especialidad_nombre"] == "Ginecología"
    assert obtener_consulta(cid)["estado_consulta"] == "completada"


def test_crea_historico_sin_consulta_abierta(paciente, medico):
    h = crea_historico(_historia(paciente, medico))
    assert h["consulta_id"] is None


def test_crea_historico_requeridos(paciente, medico):
    with pytest.raises(DatosInvalidos, match="motivo_consulta"):
        crea_historico({"paciente_id": paciente, "medico_id": medico})
    with pytest.raises(DatosInvalidos, match="medico_id"):
        crea_historico({"paciente_id": paciente, "motivo_consulta": "x"})


def test_actualiza_historico(paciente, medico):
    h = crea_historico(_historia(paciente, medico))

    r = actualiza_historico(h["id"], {"plan": "<p>Control en 3 meses</p>", "paciente_id": 999})

    assert r["plan"] == "<p>Control en 3 meses</p>"
    assert r["paciente_id"] == paciente


def test_actualiza_historico_sin_campos(paciente, medico):
    h = crea_historico(_historia(paciente, medico))
    with pytest.raises(DatosInvalidos, match="No hay campos para actualizar"):
        actualiza_historico(h["id"], {})
    with pytest.raises(NoEncontrado):
        actualiza_historico(9999, {"plan": "x"})


def test_elimina_historico(paciente, medico):
    h = crea_historico(_historia(paciente, medico))
    elimina_historico(h["id"])
    with pytest.raises(NoEncontrado):
        get_historico(h["id"])


def test_consultas_de_historico(paciente, medico, otro_medico, especialidad):
    crea_historico(_historia(paciente, medico, fecha_consulta="2024-01-10"))
    reciente = crea_historico(_historia(paciente, otro_medico, fecha_consulta="2024-03-05"))

    assert ultimo_historico_paciente(paciente)["id"] == reciente["id"]
    assert historico_paciente_medico(paciente, medico)["fecha_consulta"] == "2024-01-10"
    assert len(historico_filtrado(paciente_id=paciente, medico_id=otro_medico)) == 1
    assert [m["medico_id"] for m in medicos_con_historia(paciente)] == [otro_medico, medico]
    assert tiene_historia_por_especialidad(paciente, especialidad)
    assert not tiene_historia_por_especialidad(paciente, especialidad + 1)


def test_eliminar_consulta_conserva_historico(nueva_consulta, paciente, medico):
    cid = nueva_consulta()
    h = crea_historico(_historia(paciente, medico, consulta_id=cid))
    # completada por el historico; se puede borrar porque no está finalizada
    eliminar_consulta(cid)
    assert get_historico(h["id"])["consulta_id"] is None


@pytest.fixture
def otro_paciente():
    with db_session() as s:
        p = Paciente(
            nombres="Luisa",
            apellidos="Martínez",
            cedula="V-87654321",
            sexo=Sexo.FEMENINO,
            clinica_alias="femimed",
        )
        s.add(p)
        s.flush()
        return p.id


def test_crea_historico_consulta_inexistente(paciente, medico):
    with pytest.raises(NoEncontrado, match="Consulta no encontrada"):
        crea_historico(_historia(paciente, medico, consulta_id=9999))


def test_crea_historico_consulta_de_otro_paciente(nueva_consulta, paciente, otro_paciente, medico):
    cid = nueva_consulta(paciente_id=otro_paciente)

    with pytest.raises(DatosInvalidos, match="no pertenece al paciente"):
        crea_historico(_historia(paciente, medico, consulta_id=cid))
    assert obtener_consulta(cid)["estado_consulta"] == "agendada"


def test_completar_por_historico_ignora_consulta_ajena(nueva_consulta, paciente, otro_paciente, medico):
    cid = nueva_consulta(paciente_id=otro_paciente)

    assert marcar_completada_por_historico(paciente, medico, cid) is None
    assert obtener_consulta(cid)["estado_consulta"] == "agendada"


# =========================
# Plantillas de historia
# =========================
def test_crea_y_actualiza_plantilla(medico):
    p = crea_plantilla(medico, {"nombre": " Control anual ", "plan_template": "<p>Citología</p>"})

    assert p["nombre"] == "Control anual"
    assert p["activo"] is True
    assert p["medico_id"] == medico

    r = actualiza_plantilla(p["id"], medico, {"descripcion": "Consulta de rutina"})
    assert r["descripcion"] == "Consulta de rutina"
    assert get_plantilla(p["id"], medico)["plan_template"] == "<p>Citología</p>"


def test_plantilla_validaciones(medico):
    with pytest.raises(DatosInvalidos, match="nombre de la plantilla"):
        crea_plantilla(medico, {"descripcion": "sin nombre"})
    with pytest.raises(NoEncontrado, match="Médico no encontrado"):
        crea_plantilla(9999, {"nombre": "x"})

    p = crea_plantilla(medico, {"nombre": "Eco"})
    with pytest.raises(DatosInvalidos, match="No hay campos para actualizar"):
        actualiza_plantilla(p["id"], medico, {})
    with pytest.raises(DatosInvalidos, match="nombre de la plantilla"):
        actualiza_plantilla(p["id"], medico, {"nombre": "  "})


def test_plantillas_son_del_medico(medico, otro_medico):
    p = crea_plantilla(medico, {"nombre": "Eco"})

    assert lista_plantillas(otro_medico) == []
    with pytest.raises(NoEncontrado, match="Plantilla no encontrada"):
        get_plantilla(p["id"], otro_medico)
    with pytest.raises(NoEncontrado):
        actualiza_plantilla(p["id"], otro_medico, {"nombre": "Otra"})
    with pytest.raises(NoEncontrado):
        elimina_plantilla(p["id"], otro_medico)


def test_elimina_plantilla_es_logico(medico):
    b = crea_plantilla(medico, {"nombre": "B"})
    a = crea_plantilla(medico, {"nombre": "A"})

    elimina_plantilla(b["id"], medico)

    assert [p["id"] for p in lista_plantillas(medico)] == [a["id"]]
    assert [p["nombre"] for p in lista_plantillas(medico, solo_activas=False)] == ["A", "B"]
    assert get_plantilla(b["id"], medico)["activo"] is False


def test_elimina_medico_con_plantillas(medico):
    p = crea_plantilla(medico, {"nombre": "Eco"})

    assert elimina_medico(medico) == {"medico_id": medico, "eliminado": "fisico"}
    with db_session() as s:
        assert s.get(PlantillaHistoria, p["id"]) is None


# =========================
# Remisiones
# =========================
def _remision(paciente, medico, otro_medico, **extra):
    return {
        "paciente_id": paciente,
        "medico_remitente_id": medico,
        "medico_remitido_id": otro_medico,
        "motivo_remision": "Evaluación de mastalgia",
        **extra,
    }


def test_crea_remision_agenda_seguimiento(paciente, medico, otro_medico):
    r = crea_remision(_remision(paciente, medico, otro_medico))

    assert r["estado_remision"] == "Pendiente"
    assert r["medico_remitido"]["nombres"] == "Carlos"
    c = obtener_consulta(r["consulta_id"])
    assert c["estado_consulta"] == "por_agendar"
    assert c["medico_id"] == otro_medico
    assert c["tipo_consulta"] == "seguimiento"
    assert c["motivo_consulta"] == "Remisión: Evaluación de mastalgia"


def test_crea_remision_validaciones(paciente, medico, otro_medico):
    with pytest.raises(DatosInvalidos, match="mismo médico"):
        crea_remision(_remision(paciente, medico, medico))
    with pytest.raises(DatosInvalidos, match="al menos 5"):
        crea_remision(_remision(paciente, medico, otro_medico, motivo_remision="ok"))
    with pytest.raises(NoEncontrado, match="remitido"):
        crea_remision(_remision(paciente, medico, 9999))


def test_actualiza_estado_remision(paciente, medico, otro_medico):
    r = crea_remision(_remision(paciente, medico, otro_medico))

    aceptada = actualiza_estado_remision(r["id"], "aceptada", "Se atenderá la próxima semana")
    assert aceptada["estado_remision"] == "Aceptada"
    assert aceptada["fecha_respuesta"] is not None
    assert aceptada["observaciones"] == "Se atenderá la próxima semana"

    with pytest.raises(DatosInvalidos, match="no válido"):
        actualiza_estado_remision(r["id"], "archivada")


def test_remisiones_por_medico_y_estado(paciente, medico, otro_medico):
    r = crea_remision(_remision(paciente, medico, otro_medico))
    actualiza_estado_remision(r["id"], "Completada")
    crea_remision(_remision(paciente, otro_medico, medico))

    assert len(remisiones_por_medico(medico)) == 2
    assert len(remisiones_por_medico(medico, "remitente")) == 1
    assert len(remisiones_por_estado("pendiente")) == 1
    with pytest.raises(DatosInvalidos):
        remisiones_por_medico(medico, "otro")

    stats = estadisticas_remisiones()
    assert stats == {"total": 2, "pendientes": 1, "aceptadas": 0, "rechazadas": 0, "completadas": 1}


def test_reagendar_consulta_de_remision(paciente, medico, otro_medico):
    r = crea_remision(_remision(paciente, medico, otro_medico))
    c = reagendar_consulta(r["consulta_id"], hoy().isoformat(), "16:00")
    assert c["estado_consulta"] == E.AGENDADA.value
