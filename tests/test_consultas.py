from datetime import time, timedelta

import pytest

from clinica_backend.auth_models import RolUsuario
from clinica_backend.consultas import (
    actualizar_consulta,
    buscar_consultas,
    cancelar_consulta,
    completar_consulta,
    consultas_del_dia,
    crear_consulta,
    eliminar_consulta,
    estadisticas_consultas,
    iniciar_consulta,
    marcar_completada_por_historico,
    obtener_consulta,
    obtener_consultas,
    puede_transicionar,
    reagendar_consulta,
)
from clinica_backend.errors import DatosInvalidos, NoEncontrado, PermisoDenegado
from clinica_backend.models import EstadoConsulta as E
from clinica_backend.tiempo import hoy


def _datos(paciente, medico, dias=1):
    return {
        "paciente_id": paciente,
        "medico_id": medico,
        "motivo_consulta": "Control prenatal",
        "fecha_pautada": (hoy() + timedelta(days=dias)).isoformat(),
        "hora_pautada": "09:30",
    }


def test_crear_consulta_queda_agendada(paciente, medico):
    c = crear_consulta(_datos(paciente, medico))

    assert c["estado_consulta"] == "agendada"
    assert c["hora_pautada"] == "09:30"
    assert c["tipo_consulta"] == "primera_vez"
    assert c["paciente"]["nombres"] == "María"
    assert c["medico"]["especialidad"]["nombre_especialidad"] == "Ginecología"


def test_crear_consulta_con_fecha_pasada(paciente, medico):
    with pytest.raises(DatosInvalidos, match="anterior a hoy"):
        crear_consulta(_datos(paciente, medico, dias=-1))


def test_crear_consulta_campos_requeridos(paciente):
    with pytest.raises(DatosInvalidos, match="medico_id"):
        crear_consulta({"paciente_id": paciente, "motivo_consulta": "x", "fecha_pautada": "2099-01-01", "hora_pautada": "10:00"})


def test_crear_consulta_paciente_inexistente(medico):
    with pytest.raises(NoEncontrado):
        crear_consulta(_datos(9999, medico))


def test_crear_consulta_notifica_paciente_y_medico(paciente, medico, emails):
    crear_consulta(_datos(paciente, medico))

    destinos = [e["to"] for e in emails]
    assert ["maria@example.com"] in destinos
    assert ["ana@femimed.local"] in destinos


def test_transiciones():
    assert puede_transicionar(E.AGENDADA, E.EN_PROGRESO)
    assert puede_transicionar(E.COMPLETADA, E.FINALIZADA)
    assert not puede_transicionar(E.AGENDADA, E.FINALIZADA)
    assert not puede_transicionar(E.FINALIZADA, E.AGENDADA)
    assert not puede_transicionar(E.CANCELADA, E.REAGENDADA)


def test_cancelar_requiere_motivo(nueva_consulta):
    cid = nueva_consulta()
    with pytest.raises(DatosInvalidos, match="motivo de cancelación"):
        cancelar_consulta(cid, "   ")


def test_cancelar_consulta(nueva_consulta):
    cid = nueva_consulta()
    c = cancelar_consulta(cid, " La paciente viajó ")

    assert c["estado_consulta"] == "cancelada"
    assert c["motivo_cancelacion"] == "La paciente viajó"
    assert c["fecha_cancelacion"] is not None


def test_cancelar_solo_agendada_o_reagendada(nueva_consulta):
    cid = nueva_consulta(estado=E.COMPLETADA)
    with pytest.raises(DatosInvalidos, match="Solo se pueden cancelar"):
        cancelar_consulta(cid, "motivo")


def test_reagendar_consulta(nueva_consulta):
    cid = nueva_consulta()
    nueva = (hoy() + timedelta(days=3)).isoformat()
    c = reagendar_consulta(cid, nueva, "15:00")

    assert c["estado_consulta"] == "reagendada"
    assert c["fecha_pautada"] == nueva
    assert c["hora_pautada"] == "15:00"


def test_reagendar_por_agendar_pasa_a_agendada(nueva_consulta):
    cid = nueva_consulta(estado=E.POR_AGENDAR)
    c = reagendar_consulta(cid, hoy().isoformat(), "11:00")
    assert c["estado_consulta"] == "agendada"


def test_reagendar_fecha_pasada(nueva_consulta):
    cid = nueva_consulta()
    with pytest.raises(DatosInvalidos, match="anterior a hoy"):
        reagendar_consulta(cid, (hoy() - timedelta(days=1)).isoformat(), "10:00")


def test_reagendar_estado_no_permitido(nueva_consulta):
    cid = nueva_consulta(estado=E.FINALIZADA)
    with pytest.raises(DatosInvalidos, match="Solo se pueden reagendar"):
        reagendar_consulta(cid, hoy().isoformat(), "10:00")


def test_iniciar_y_completar(nueva_consulta):
    cid = nueva_consulta()
    assert iniciar_consulta(cid)["estado_consulta"] == "en_progreso"

    c = completar_consulta(cid)
    assert c["estado_consulta"] == "completada"
    assert c["fecha_culminacion"] is not None


def test_completar_rol_secretaria_denegado(nueva_consulta, usuario):
    cid = nueva_consulta()
    with pytest.raises(PermisoDenegado):
        completar_consulta(cid, usuario(RolUsuario.SECRETARIA.value))


def test_completar_medico_ajeno_denegado(nueva_consulta, otro_medico, usuario):
    cid = nueva_consulta(medico_id=otro_medico)
    with pytest.raises(PermisoDenegado, match="sus propias consultas"):
        completar_consulta(cid, usuario(RolUsuario.MEDICO.value))


def test_completar_medico_propio(nueva_consulta, usuario):
    cid = nueva_consulta()
    u = usuario(RolUsuario.MEDICO.value)
    assert completar_consulta(cid, u)["actualizado_por"] == u.id


def test_actualizar_no_permite_finalizar(nueva_consulta):
    cid = nueva_consulta(estado=E.COMPLETADA)
    with pytest.raises(DatosInvalidos, match="finalización con servicios"):
        actualizar_consulta(cid, {"estado_consulta": "finalizada"})


def test_actualizar_transicion_invalida(nueva_consulta):
    cid = nueva_consulta(estado=E.EN_PROGRESO)
    with pytest.raises(DatosInvalidos, match="Transición no permitida"):
        actualizar_consulta(cid, {"estado_consulta": "agendada"})


def test_actualizar_campos(nueva_consulta):
    cid = nueva_consulta()
    c = actualizar_consulta(cid, {"observaciones": "Traer exámenes", "prioridad": "alta", "desconocido": 1})
    assert c["observaciones"] == "Traer exámenes"
    assert c["prioridad"] == "alta"


def test_eliminar_consulta_finalizada(nueva_consulta):
    cid = nueva_consulta(estado=E.FINALIZADA)
    with pytest.raises(DatosInvalidos, match="finalizada"):
        eliminar_consulta(cid)


def test_eliminar_consulta(nueva_consulta):
    cid = nueva_consulta()
    eliminar_consulta(cid)
    with pytest.raises(NoEncontrado):
        obtener_consulta(cid)


def test_del_dia_medico_solo_ve_las_suyas(nueva_consulta, otro_medico, usuario):
    propia = nueva_consulta(hora=time(9, 0))
    nueva_consulta(medico_id=otro_medico)
    nueva_consulta(dias=1)
    nueva_consulta(estado=E.CANCELADA)

    assert [c["id"] for c in consultas_del_dia(usuario(RolUsuario.MEDICO.value))] == [propia]
    assert len(consultas_del_dia()) == 2


def test_obtener_consultas_paginado(nueva_consulta):
    for d in range(5):
        nueva_consulta(dias=d)

    r = obtener_consultas({"page": 2, "limit": 2})
    assert r["total"] == 5
    assert r["total_pages"] == 3
    assert len(r["items"]) == 2


def test_buscar_consultas(nueva_consulta):
    nueva_consulta()
    assert len(buscar_consultas("control")) == 1
    assert buscar_consultas("V-1234")[0]["paciente"]["cedula"] == "V-12345678"
    with pytest.raises(DatosInvalidos):
        buscar_consultas(" ")


def test_marcar_completada_por_historico(nueva_consulta, paciente, medico):
    cid = nueva_consulta()
    assert marcar_completada_por_historico(paciente, medico) == cid
    assert obtener_consulta(cid)["estado_consulta"] == "completada"


def test_marcar_completada_sin_consulta_abierta(nueva_consulta, paciente, medico):
    nueva_consulta(estado=E.CANCELADA)
    assert marcar_completada_por_historico(paciente, medico) is None


def test_estadisticas_consultas(nueva_consulta):
    nueva_consulta()
    nueva_consulta(estado=E.COMPLETADA)
    stats = estadisticas_consultas()
    assert stats["total"] == 2
