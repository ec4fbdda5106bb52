"""
Errores de dominio.

Los servicios lanzan estas excepciones; la API las traduce a respuestas JSON
con el status code asociado. Derivan de ValueError para que los llamadores
simples (CLI) puedan seguir capturando ValueError.
"""
from __future__ import annotations


class ClinicaError(ValueError):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class DatosInvalidos(ClinicaError):
    status_code = 400


class NoAutorizado(ClinicaError):
    status_code = 401


class PermisoDenegado(ClinicaError):
    status_code = 403


class NoEncontrado(ClinicaError):
    status_code = 404


class Conflicto(ClinicaError):
    status_code = 409
