from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from clinica_backend.auth_service import crea_usuario
from clinica_backend.config import configure_logging
from clinica_backend.consultas import finalizar_consulta
from clinica_backend.errors import ClinicaError
from clinica_backend.finanzas import exportar_reporte
from clinica_backend.seed import seed_base
from clinica_backend.services import (
    crea_paciente,
    init_db,
    lista_especialidades_flat,
    lista_medicos_flat,
    lista_pacientes_flat,
    lista_servicios_flat,
    registra_tipo_cambio,
    tipo_cambio_actual,
)

logger = logging.getLogger(__name__)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("BD inicializada y seed completado.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "especialidades":
        for e in lista_especialidades_flat():
            print(f"{e['id']} | {e['nombre_especialidad']} | {'activa' if e['activa'] else 'inactiva'}")
    elif args.entity == "medicos":
        for m in lista_medicos_flat():
            esp = m["especialidad"]["nombre_especialidad"] if m["especialidad"] else "-"
            print(f"{m['id']} | {m['apellidos']} {m['nombres']} | {esp}")
    elif args.entity == "pacientes":
        for p in lista_pacientes_flat(limit=1000):
            print(f"{p['id']} | {p['apellidos']} {p['nombres']} | {p['cedula'] or '-'} | {p['email'] or '-'}")
    elif args.entity == "servicios":
        for sv in lista_servicios_flat():
            print(f"{sv['id']} | {sv['nombre_servicio']} | {sv['monto_base']:.2f} {sv['moneda']}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    pid = crea_paciente(
        args.nombres,
        args.apellidos,
        cedula=args.cedula,
        email=args.email,
        telefono=args.telefono,
    )
    print(f"Paciente creado: {pid}")


def cmd_add_user(args: argparse.Namespace) -> None:
    uid = crea_usuario(args.username, args.password, args.rol, medico_id=args.medico_id, email=args.email)
    print(f"Usuario creado: {uid}")


def cmd_tipo_cambio(args: argparse.Namespace) -> None:
    if args.usd_to_ves is not None:
        tc = registra_tipo_cambio(args.usd_to_ves)
        print(f"Tasa registrada para {tc['fecha']}: {tc['usd_to_ves']:.4f} VES/USD")
    else:
        tc = tipo_cambio_actual()
        print(f"Tasa del {tc['fecha']}: {tc['usd_to_ves']:.4f} VES/USD")


def cmd_finalize(args: argparse.Namespace) -> None:
    """
    Finaliza una consulta completada. Servicios como JSON, por ejemplo:
    '[{"servicio_id": 1, "monto_pagado": 80, "moneda": "USD"}]'
    """
    servicios = json.loads(args.servicios)
    r = finalizar_consulta(args.consulta_id, servicios, metodo_pago=args.metodo_pago)
    t = r["totales"]
    print(r["mensaje"])
    print(f"Servicios: {t['cantidad_servicios']} | USD {t['total_usd']:.2f} | VES {t['total_ves']:.2f}")


def cmd_report(args: argparse.Namespace) -> None:
    filtros = {
        "fecha_desde": args.desde,
        "fecha_hasta": args.hasta,
        "medico_id": args.medico_id,
        "moneda": args.moneda,
    }
    exp = exportar_reporte(args.formato, {k: v for k, v in filtros.items() if v is not None})
    destino = Path(args.output) if args.output else Path(exp.filename)
    destino.write_bytes(exp.contenido)
    print(f"Reporte escrito en {destino} ({len(exp.contenido)} bytes)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinica-cli", description="CLI de la clínica (tareas administrativas)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea la BD y carga el seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entidades")
    p_list.add_argument("entity", choices=["especialidades", "medicos", "pacientes", "servicios"])
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Crea paciente")
    p_addp.add_argument("--nombres", required=True)
    p_addp.add_argument("--apellidos", required=True)
    p_addp.add_argument("--cedula", default=None)
    p_addp.add_argument("--email", default=None)
    p_addp.add_argument("--telefono", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    p_addu = sub.add_parser("add-user", help="Crea usuario")
    p_addu.add_argument("--username", required=True)
    p_addu.add_argument("--password", required=True)
    p_addu.add_argument("--rol", required=True, choices=["administrador", "secretaria", "medico", "finanzas"])
    p_addu.add_argument("--medico-id", type=int, default=None)
    p_addu.add_argument("--email", default=None)
    p_addu.set_defaults(func=cmd_add_user)

    p_tc = sub.add_parser("tipo-cambio", help="Muestra o registra la tasa USD->VES del día")
    p_tc.add_argument("--usd-to-ves", default=None, help="Nueva tasa; sin valor muestra la vigente")
    p_tc.set_defaults(func=cmd_tipo_cambio)

    p_fin = sub.add_parser("finalize", help="Finaliza una consulta completada")
    p_fin.add_argument("--consulta-id", type=int, required=True)
    p_fin.add_argument("--servicios", required=True, help="JSON con la lista de servicios cobrados")
    p_fin.add_argument("--metodo-pago", default=None)
    p_fin.set_defaults(func=cmd_finalize)

    p_rep = sub.add_parser("report", help="Genera el reporte financiero (Excel o PDF)")
    p_rep.add_argument("--formato", choices=["excel", "pdf"], default="excel")
    p_rep.add_argument("--desde", default=None, help="YYYY-MM-DD")
    p_rep.add_argument("--hasta", default=None, help="YYYY-MM-DD")
    p_rep.add_argument("--medico-id", type=int, default=None)
    p_rep.add_argument("--moneda", choices=["USD", "VES", "TODAS"], default=None)
    p_rep.add_argument("--output", "-o", default=None)
    p_rep.set_defaults(func=cmd_report)

    return p


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    init_db()  # garantiza tablas
    try:
        args.func(args)
    except ClinicaError as e:
        logger.error("%s", e.message)
        print(f"Error: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
