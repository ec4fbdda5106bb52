import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from clinica_backend.api_main import app
from clinica_backend.auth_models import RolUsuario
from clinica_backend.auth_security import (
    JWT_ALG,
    create_access_token,
    decode_token,
    get_subject,
    hash_password,
    usuario_id_del_token,
    valida_password,
    verify_password,
)
from clinica_backend.auth_service import (
    autentica,
    cambia_password,
    crea_usuario,
    emite_token,
    lista_usuarios_flat,
)
from clinica_backend.config import JWT_SECRET
from clinica_backend.errors import Conflicto, DatosInvalidos, NoAutorizado, NoEncontrado

API = "/api/v1"


def test_hash_y_verificacion():
    h = hash_password("secreto123")
    assert h != "secreto123"
    assert verify_password("secreto123", h)
    assert not verify_password("otra", h)


def test_token_subject_y_claims():
    token = create_access_token("42", {"rol": "medico"})
    payload = decode_token(token)
    assert payload["sub"] == "42"
    assert payload["rol"] == "medico"
    assert payload["exp"] > payload["iat"]
    assert get_subject(token) == "42"
    assert get_subject("no-es-un-token") is None


def test_usuario_id_del_token():
    token = create_access_token("7")
    assert usuario_id_del_token(f" \"{token}\" ") == 7
    with pytest.raises(NoAutorizado, match="Token no válido"):
        usuario_id_del_token("basura")

    vencido = jwt.encode({"sub": "7", "exp": int(time.time()) - 60}, JWT_SECRET, algorithm=JWT_ALG)
    with pytest.raises(NoAutorizado, match="Token expirado"):
        usuario_id_del_token(vencido)


def test_valida_password():
    assert valida_password("clave123") == "clave123"
    for mala in (None, "", "corta"):
        with pytest.raises(DatosInvalidos, match="al menos 6"):
            valida_password(mala)


def test_crea_usuario_normaliza_username():
    uid = crea_usuario("  Secretaria1 ", "clave123", "SECRETARIA")
    u = autentica("secretaria1", "clave123")
    assert u.id == uid
    assert u.rol == RolUsuario.SECRETARIA


def test_crea_usuario_validaciones(medico):
    with pytest.raises(DatosInvalidos, match="Rol no válido"):
        crea_usuario("x", "clave123", "enfermera")
    with pytest.raises(DatosInvalidos, match="asociado a un médico"):
        crea_usuario("dra", "clave123", "medico")
    with pytest.raises(NoEncontrado):
        crea_usuario("dra", "clave123", "medico", medico_id=9999)

    crea_usuario("dra", "clave123", "medico", medico_id=medico)
    with pytest.raises(Conflicto):
        crea_usuario("DRA", "clave123", "medico", medico_id=medico)


def test_autentica_credenciales_invalidas():
    crea_usuario("admin", "clave123", "administrador")
    assert autentica("admin", "mala") is None
    assert autentica("nadie", "clave123") is None


def test_emite_token_lleva_rol_y_medico(usuario, medico):
    u = usuario(RolUsuario.MEDICO.value)
    payload = decode_token(emite_token(u))
    assert payload["rol"] == "medico"
    assert payload["medico_id"] == medico
    assert payload["clinica_alias"] == "femimed"


def test_cambia_password():
    uid = crea_usuario("finanzas", "clave123", "finanzas")
    with pytest.raises(NoAutorizado):
        cambia_password(uid, "incorrecta", "nueva456")
    with pytest.raises(DatosInvalidos):
        cambia_password(uid, "clave123", "corta")

    cambia_password(uid, "clave123", "nueva456")
    assert autentica("finanzas", "nueva456") is not None


def test_lista_usuarios():
    crea_usuario("b_user", "clave123", "finanzas")
    crea_usuario("a_user", "clave123", "secretaria")
    assert [u["username"] for u in lista_usuarios_flat()] == ["a_user", "b_user"]


# =========================
# Login HTTP
# =========================
def test_login_y_me():
    crea_usuario("recepcion", "clave123", "secretaria")
    client = TestClient(app)

    r = client.post(f"{API}/auth/login", data={"username": "recepcion", "password": "clave123"})
    assert r.status_code == 200
    body = r.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["rol"] == "secretaria"

    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["username"] == "recepcion"


def test_login_credenciales_invalidas():
    crea_usuario("recepcion", "clave123", "secretaria")
    r = TestClient(app).post(f"{API}/auth/login", data={"username": "recepcion", "password": "mala"})

    assert r.status_code == 401
    assert r.json() == {"success": False, "error": {"message": "Credenciales inválidas"}}


def test_sin_token():
    r = TestClient(app).get(f"{API}/consultas")
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Token de acceso requerido"


def test_token_invalido():
    r = TestClient(app).get(f"{API}/auth/me", headers={"Authorization": "Bearer basura"})
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Token no válido"
