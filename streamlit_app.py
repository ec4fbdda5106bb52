from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="FemiMed", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")
API = f"{API_BASE}/api/v1"



# JWT helpers (solo para la UI, sin verificar firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)


def jwt_rol(token: str) -> str:
    return str(jwt_payload(token).get("rol") or "")


def jwt_username(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("username") or p.get("sub") or "usuario")



# Cliente HTTP (con JWT)

def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _check(r: requests.Response) -> None:
    if r.status_code == 401:
        raise PermissionError("401 No autorizado (token inválido/expirado o backend reiniciado).")
    if r.status_code >= 400:
        try:
            msg = r.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            msg = r.text
        raise RuntimeError(msg)


def api_get(path: str, token: str | None = None, params: dict | None = None):
    r = requests.get(f"{API}{path}", headers=_headers(token), params=params, timeout=10)
    _check(r)
    return r.json().get("data")


def api_send(method: str, path: str, payload: dict, token: str | None = None) -> dict:
    r = requests.request(method, f"{API}{path}", headers=_headers(token), json=payload, timeout=30)
    _check(r)
    return r.json()


def api_download(path: str, payload: dict, token: str) -> tuple[bytes, str]:
    r = requests.post(f"{API}{path}", headers=_headers(token), json=payload, timeout=60)
    _check(r)
    disp = r.headers.get("content-disposition", "")
    filename = disp.split("filename=")[-1].strip('"') if "filename=" in disp else "reporte"
    return r.content, filename


def api_login(username: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API}/auth/login",
        data={"username": username, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str) and len(token) > 0


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.rerun()


def require_auth(*roles: str) -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Sección reservada. Inicia sesión desde la barra lateral.")
        return None

    if jwt_is_expired(token):
        st.error("Sesión expirada. Cierra sesión y vuelve a entrar.")
        return None

    if roles and jwt_rol(token) not in roles:
        st.info("Tu rol no tiene acceso a esta sección.")
        return None

    return token


def _sesion_invalida(e: PermissionError) -> None:
    st.session_state["auth_error"] = str(e)
    st.error("Sesión no válida. Cierra sesión y vuelve a entrar.")


def nombre(persona: dict | None) -> str:
    if not persona:
        return "-"
    return f"{persona.get('nombres', '')} {persona.get('apellidos', '')}".strip()



# Sidebar login

with st.sidebar:
    st.header("Acceso")

    token = st.session_state.get("token")

    if not is_logged_in():
        u = st.text_input("Usuario", key="login_user")
        p = st.text_input("Contraseña", type="password", key="login_pass")

        if st.button("Entrar", key="login_btn"):
            try:
                st.session_state["token"] = api_login(u.strip().lower(), p)
                st.session_state.pop("auth_error", None)
                st.success("Sesión iniciada.")
                st.rerun()
            except requests.HTTPError:
                st.error("Credenciales inválidas.")
            except requests.RequestException as e:
                st.error(str(e))
    else:
        # Datos del token, sin llamar a /auth/me en cada rerun
        st.write(f"Usuario: **{jwt_username(token)}** ({jwt_rol(token)})")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Salir", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("FemiMed: consultas y finanzas")

tab1, tab2, tab3 = st.tabs(["Agenda del día", "Finalizar consulta", "Finanzas"])



# TAB 1 - Agenda del día

with tab1:
    st.subheader("Consultas del día")

    token = require_auth()
    if token:
        try:
            items = api_get("/consultas/del-dia", token=token)
            if not items:
                st.info("No hay consultas para hoy.")
            else:
                for c in items:
                    st.write(
                        f"- **{c['hora_pautada']}** | {nombre(c['paciente'])} | "
                        f"Dr(a). {nombre(c['medico'])} | {c['motivo_consulta']} | Estado: {c['estado_consulta']}"
                    )
                    if jwt_rol(token) in ("medico", "administrador") and c["estado_consulta"] in (
                        "agendada", "reagendada", "en_progreso",
                    ):
                        if st.button("Marcar completada", key=f"completar_{c['id']}"):
                            try:
                                api_send("PUT", f"/consultas/{c['id']}/completar", {}, token=token)
                                st.success("Consulta completada.")
                                st.rerun()
                            except RuntimeError as e:
                                st.error(str(e))
        except PermissionError as e:
            _sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Error cargando la agenda: {e}")



# TAB 2 - Finalización (secretaria / administrador)

with tab2:
    st.subheader("Finalizar consulta completada")

    token = require_auth("secretaria", "administrador")
    if token:
        try:
            completadas = api_get("/consultas", token=token, params={"estado": "completada", "limit": 100})
        except PermissionError as e:
            _sesion_invalida(e)
            completadas = []
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Error cargando consultas: {e}")
            completadas = []

        if not completadas:
            st.info("No hay consultas completadas pendientes de finalizar.")
        else:
            consulta = st.selectbox(
                "Consulta",
                options=completadas,
                format_func=lambda c: f"#{c['id']} {c['fecha_pautada']} {c['hora_pautada']} | {nombre(c['paciente'])}",
                key="fin_consulta",
            )
            esp = (consulta["medico"] or {}).get("especialidad_id")
            try:
                servicios = api_get(f"/especialidades/{esp}/servicios", token=token) if esp else []
            except (RuntimeError, requests.RequestException) as e:
                st.error(f"Error cargando servicios: {e}")
                servicios = []

            tasa = api_get("/tipos-cambio/actual", token=token)
            st.caption(f"Tasa del día: {tasa['usd_to_ves']:.2f} VES/USD")

            elegidos = st.multiselect(
                "Servicios",
                options=servicios,
                format_func=lambda sv: f"{sv['nombre_servicio']} ({sv['monto_base']:.2f} {sv['moneda']})",
                key="fin_servicios",
            )
            lineas = []
            for sv in elegidos:
                c1, c2 = st.columns(2)
                monto = c1.number_input(
                    f"Monto {sv['nombre_servicio']}", min_value=0.0, value=float(sv["monto_base"]), key=f"monto_{sv['id']}"
                )
                moneda = c2.selectbox(
                    f"Moneda {sv['nombre_servicio']}", options=["USD", "VES"],
                    index=0 if sv["moneda"] == "USD" else 1, key=f"moneda_{sv['id']}",
                )
                lineas.append({"servicio_id": sv["id"], "monto_pagado": monto, "moneda": moneda})

            metodo = st.selectbox("Método de pago", ["Efectivo", "Transferencia", "Pago móvil", "Tarjeta"], key="fin_metodo")

            if st.button("Finalizar", key="fin_submit", disabled=not lineas):
                try:
                    res = api_send(
                        "PUT", f"/consultas/{consulta['id']}/finalizar",
                        {"servicios": lineas, "metodo_pago": metodo}, token=token,
                    )
                    t = res["data"]["totales"]
                    st.success(f"{res['message']}: USD {t['total_usd']:.2f} | VES {t['total_ves']:.2f}")
                except PermissionError as e:
                    _sesion_invalida(e)
                except (RuntimeError, requests.RequestException) as e:
                    st.error(str(e))



# TAB 3 - Finanzas (finanzas / administrador)

with tab3:
    st.subheader("Resumen financiero")

    token = require_auth("finanzas", "administrador")
    if token:
        c1, c2, c3 = st.columns(3)
        desde = c1.date_input("Desde", value=date.today().replace(day=1), key="fin_desde")
        hasta = c2.date_input("Hasta", value=date.today(), key="fin_hasta")
        moneda = c3.selectbox("Moneda", ["TODAS", "USD", "VES"], key="fin_moneda")
        filtros = {"fecha_desde": desde.isoformat(), "fecha_hasta": hasta.isoformat()}

        try:
            resumen = api_send("POST", "/finanzas/resumen", {"filtros": filtros, "moneda": moneda}, token=token)["data"]
            m1, m2, m3 = st.columns(3)
            m1.metric("Consultas", resumen["total_consultas"])
            m2.metric("Ingresos", f"{resumen['total_ingresos']:.2f}")
            m3.metric("Pendientes de pago", resumen["consultas_pendientes"])

            st.write("Por especialidad:")
            for k, v in resumen["total_por_especialidad"].items():
                st.write(f"- {k}: {v:.2f}")
            st.write("Por moneda:")
            for k, v in resumen["estadisticas_por_moneda"].items():
                st.write(f"- {k}: {v['total_consultas']} consultas, {v['total_ingresos']:.2f}")
        except PermissionError as e:
            _sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(f"Error cargando el resumen: {e}")

        st.divider()
        formato = st.radio("Formato", ["excel", "pdf"], horizontal=True, key="fin_formato")
        if st.button("Generar reporte", key="fin_export"):
            try:
                contenido, filename = api_download(
                    "/finanzas/exportar", {"formato": formato, "filtros": {**filtros, "moneda": moneda}}, token
                )
                st.download_button("Descargar", data=contenido, file_name=filename, key="fin_download")
            except PermissionError as e:
                _sesion_invalida(e)
            except (RuntimeError, requests.RequestException) as e:
                st.error(str(e))
