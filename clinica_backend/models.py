from __future__ import annotations

import enum
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .config import CLINICA_ALIAS
from .db import Base
from .tiempo import ahora


def _valores(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


def enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Persistimos el valor ("agendada") y no el nombre del miembro
    return Enum(enum_cls, values_callable=_valores, native_enum=False, length=20, validate_strings=True)


class EstadoConsulta(enum.Enum):
    AGENDADA = "agendada"
    REAGENDADA = "reagendada"
    EN_PROGRESO = "en_progreso"
    COMPLETADA = "completada"
    FINALIZADA = "finalizada"
    CANCELADA = "cancelada"
    POR_AGENDAR = "por_agendar"
    NO_ASISTIO = "no_asistio"


class Prioridad(enum.Enum):
    BAJA = "baja"
    NORMAL = "normal"
    ALTA = "alta"
    URGENTE = "urgente"


class TipoConsulta(enum.Enum):
    PRIMERA_VEZ = "primera_vez"
    CONTROL = "control"
    SEGUIMIENTO = "seguimiento"
    EMERGENCIA = "emergencia"


class Moneda(enum.Enum):
    USD = "USD"
    VES = "VES"


class Sexo(enum.Enum):
    MASCULINO = "Masculino"
    FEMENINO = "Femenino"
    OTRO = "Otro"


class EstadoRemision(enum.Enum):
    PENDIENTE = "Pendiente"
    ACEPTADA = "Aceptada"
    RECHAZADA = "Rechazada"
    COMPLETADA = "Completada"


class EstadoInforme(enum.Enum):
    BORRADOR = "borrador"
    FINALIZADO = "finalizado"
    FIRMADO = "firmado"
    ENVIADO = "enviado"


class MetodoEnvio(enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    PRESENCIAL = "presencial"


class EstadoEnvio(enum.Enum):
    PENDIENTE = "pendiente"
    ENVIADO = "enviado"
    FALLIDO = "fallido"
    ENTREGADO = "entregado"


class Especialidad(Base):
    __tablename__ = "especialidades"
    __table_args__ = (UniqueConstraint("clinica_alias", "nombre_especialidad", name="uq_especialidad_nombre"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombre_especialidad: Mapped[str] = mapped_column(String(120), nullable=False)
    descripcion: Mapped[str | None] = mapped_column(Text, nullable=True)
    tarifa_consulta: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    activa: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)

    medicos: Mapped[list["Medico"]] = relationship(back_populates="especialidad")
    servicios: Mapped[list["Servicio"]] = relationship(back_populates="especialidad", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"Especialidad({self.nombre_especialidad})"


class Medico(Base):
    __tablename__ = "medicos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombres: Mapped[str] = mapped_column(String(80), nullable=False)
    apellidos: Mapped[str] = mapped_column(String(80), nullable=False)
    cedula: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    telefono: Mapped[str | None] = mapped_column(String(30), nullable=True)
    especialidad_id: Mapped[int | None] = mapped_column(ForeignKey("especialidades.id"), nullable=True)
    mpps: Mapped[str | None] = mapped_column(String(20), nullable=True)  # registro Ministerio de Salud
    cm: Mapped[str | None] = mapped_column(String(20), nullable=True)  # colegio de médicos
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    especialidad: Mapped["Especialidad | None"] = relationship(back_populates="medicos")
    consultas: Mapped[list["Consulta"]] = relationship(back_populates="medico", cascade="all, delete-orphan")

    @property
    def nombre_completo(self) -> str:
        return f"{self.nombres} {self.apellidos}".strip()

    def __repr__(self) -> str:
        return f"Medico({self.nombres} {self.apellidos})"


class Paciente(Base):
    __tablename__ = "pacientes"
    __table_args__ = (UniqueConstraint("clinica_alias", "cedula", name="uq_paciente_cedula"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombres: Mapped[str] = mapped_column(String(80), nullable=False)
    apellidos: Mapped[str] = mapped_column(String(80), nullable=False)
    cedula: Mapped[str | None] = mapped_column(String(20), nullable=True)
    edad: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sexo: Mapped[Sexo | None] = mapped_column(enum_column(Sexo), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    telefono: Mapped[str | None] = mapped_column(String(30), nullable=True)
    direccion: Mapped[str | None] = mapped_column(Text, nullable=True)
    fur: Mapped[date | None] = mapped_column(Date, nullable=True)  # fecha última regla
    paridad: Mapped[str | None] = mapped_column(String(80), nullable=True)
    antecedentes_medicos: Mapped[str | None] = mapped_column(Text, nullable=True)
    alergias: Mapped[str | None] = mapped_column(Text, nullable=True)
    medicamentos: Mapped[str | None] = mapped_column(Text, nullable=True)
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    consultas: Mapped[list["Consulta"]] = relationship(back_populates="paciente", cascade="all, delete-orphan")
    historicos: Mapped[list["Historico"]] = relationship(back_populates="paciente", cascade="all, delete-orphan")

    @property
    def nombre_completo(self) -> str:
        return f"{self.nombres} {self.apellidos}".strip()

    def __repr__(self) -> str:
        return f"Paciente({self.nombres} {self.apellidos})"


class Consulta(Base):
    __tablename__ = "consultas_pacientes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    paciente_id: Mapped[int] = mapped_column(ForeignKey("pacientes.id"), nullable=False)
    medico_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)

    motivo_consulta: Mapped[str] = mapped_column(Text, nullable=False)
    tipo_consulta: Mapped[TipoConsulta] = mapped_column(
        enum_column(TipoConsulta), default=TipoConsulta.PRIMERA_VEZ, nullable=False
    )
    fecha_pautada: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    hora_pautada: Mapped[time] = mapped_column(Time, nullable=False)
    duracion_estimada: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    estado_consulta: Mapped[EstadoConsulta] = mapped_column(
        enum_column(EstadoConsulta), default=EstadoConsulta.AGENDADA, nullable=False, index=True
    )
    prioridad: Mapped[Prioridad] = mapped_column(enum_column(Prioridad), default=Prioridad.NORMAL, nullable=False)

    observaciones: Mapped[str | None] = mapped_column(Text, nullable=True)
    notas_internas: Mapped[str | None] = mapped_column(Text, nullable=True)
    recordatorio_enviado: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    fecha_culminacion: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    motivo_cancelacion: Mapped[str | None] = mapped_column(Text, nullable=True)
    fecha_cancelacion: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelado_por: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actualizado_por: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # datos financieros
    fecha_pago: Mapped[date | None] = mapped_column(Date, nullable=True)
    metodo_pago: Mapped[str | None] = mapped_column(String(50), nullable=True)
    observaciones_financieras: Mapped[str | None] = mapped_column(Text, nullable=True)

    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_actualizacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, onupdate=ahora, nullable=False)

    paciente: Mapped["Paciente"] = relationship(back_populates="consultas")
    medico: Mapped["Medico"] = relationship(back_populates="consultas")
    servicios_consulta: Mapped[list["ServicioConsulta"]] = relationship(
        back_populates="consulta", cascade="all, delete-orphan", order_by="ServicioConsulta.id"
    )


class Servicio(Base):
    __tablename__ = "servicios"
    __table_args__ = (
        # Un mismo nombre de servicio no se repite dentro de una especialidad
        UniqueConstraint("clinica_alias", "especialidad_id", "nombre_servicio", name="uq_servicio_especialidad_nombre"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombre_servicio: Mapped[str] = mapped_column(String(120), nullable=False)
    especialidad_id: Mapped[int] = mapped_column(ForeignKey("especialidades.id"), nullable=False)
    monto_base: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    moneda: Mapped[Moneda] = mapped_column(enum_column(Moneda), default=Moneda.USD, nullable=False)
    descripcion: Mapped[str | None] = mapped_column(Text, nullable=True)
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    especialidad: Mapped["Especialidad"] = relationship(back_populates="servicios")
    lineas: Mapped[list["ServicioConsulta"]] = relationship(back_populates="servicio")


class ServicioConsulta(Base):
    __tablename__ = "servicios_consulta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consulta_id: Mapped[int] = mapped_column(ForeignKey("consultas_pacientes.id"), nullable=False, index=True)
    servicio_id: Mapped[int] = mapped_column(ForeignKey("servicios.id"), nullable=False)
    monto_pagado: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    moneda_pago: Mapped[Moneda] = mapped_column(enum_column(Moneda), nullable=False)
    tipo_cambio: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    observaciones: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    consulta: Mapped["Consulta"] = relationship(back_populates="servicios_consulta")
    servicio: Mapped["Servicio"] = relationship(back_populates="lineas")


class TipoCambio(Base):
    __tablename__ = "tipos_cambio"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fecha: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    usd_to_ves: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    creado_el: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)


class Historico(Base):
    __tablename__ = "historico_pacientes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paciente_id: Mapped[int] = mapped_column(ForeignKey("pacientes.id"), nullable=False, index=True)
    medico_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)
    consulta_id: Mapped[int | None] = mapped_column(ForeignKey("consultas_pacientes.id"), nullable=True)

    motivo_consulta: Mapped[str] = mapped_column(Text, nullable=False)
    diagnostico: Mapped[str | None] = mapped_column(Text, nullable=True)
    conclusiones: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    fecha_consulta: Mapped[date] = mapped_column(Date, nullable=False)
    nombre_archivo: Mapped[str | None] = mapped_column(String(255), nullable=True)

    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_actualizacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, onupdate=ahora, nullable=False)

    paciente: Mapped["Paciente"] = relationship(back_populates="historicos")
    medico: Mapped["Medico"] = relationship()


class PlantillaHistoria(Base):
    """Textos predefinidos que un médico reutiliza al redactar historias."""

    __tablename__ = "plantillas_historias_medicas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    medico_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False, index=True)
    nombre: Mapped[str] = mapped_column(String(150), nullable=False)
    descripcion: Mapped[str | None] = mapped_column(Text, nullable=True)

    motivo_consulta_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnostico_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    conclusiones_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_actualizacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, onupdate=ahora, nullable=False)


class Remision(Base):
    __tablename__ = "remisiones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paciente_id: Mapped[int] = mapped_column(ForeignKey("pacientes.id"), nullable=False)
    medico_remitente_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)
    medico_remitido_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)
    # consulta de seguimiento creada junto con la remisión
    consulta_id: Mapped[int | None] = mapped_column(ForeignKey("consultas_pacientes.id"), nullable=True)

    motivo_remision: Mapped[str] = mapped_column(Text, nullable=False)
    observaciones: Mapped[str | None] = mapped_column(Text, nullable=True)
    estado_remision: Mapped[EstadoRemision] = mapped_column(
        enum_column(EstadoRemision), default=EstadoRemision.PENDIENTE, nullable=False
    )
    fecha_remision: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_respuesta: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)

    paciente: Mapped["Paciente"] = relationship()
    medico_remitente: Mapped["Medico"] = relationship(foreign_keys=[medico_remitente_id])
    medico_remitido: Mapped["Medico"] = relationship(foreign_keys=[medico_remitido_id])


class ConfiguracionInforme(Base):
    __tablename__ = "configuracion_informes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinica_alias: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    prefijo_numero: Mapped[str] = mapped_column(String(10), default="INF", nullable=False)
    contador_actual: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    nombre_clinica: Mapped[str | None] = mapped_column(String(120), nullable=True)
    pie_pagina: Mapped[str | None] = mapped_column(Text, nullable=True)


class InformeMedico(Base):
    __tablename__ = "informes_medicos"
    __table_args__ = (UniqueConstraint("clinica_alias", "numero_informe", name="uq_informe_numero"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    numero_informe: Mapped[str] = mapped_column(String(30), nullable=False)
    numero_secuencial: Mapped[int] = mapped_column(Integer, nullable=False)
    titulo: Mapped[str] = mapped_column(String(200), nullable=False)
    tipo_informe: Mapped[str] = mapped_column(String(50), nullable=False)
    contenido: Mapped[str] = mapped_column(Text, nullable=False)

    paciente_id: Mapped[int] = mapped_column(ForeignKey("pacientes.id"), nullable=False)
    medico_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)

    estado: Mapped[EstadoInforme] = mapped_column(
        enum_column(EstadoInforme), default=EstadoInforme.BORRADOR, nullable=False
    )
    fecha_emision: Mapped[date] = mapped_column(Date, nullable=False)
    fecha_envio: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    observaciones: Mapped[str | None] = mapped_column(Text, nullable=True)
    creado_por: Mapped[int | None] = mapped_column(Integer, nullable=True)

    clinica_alias: Mapped[str] = mapped_column(String(50), default=lambda: CLINICA_ALIAS, nullable=False, index=True)
    fecha_creacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_actualizacion: Mapped[datetime] = mapped_column(DateTime, default=ahora, onupdate=ahora, nullable=False)

    paciente: Mapped["Paciente"] = relationship()
    medico: Mapped["Medico"] = relationship()
    firmas: Mapped[list["FirmaDigital"]] = relationship(
        back_populates="informe", cascade="all, delete-orphan", order_by="FirmaDigital.id"
    )
    envios: Mapped[list["EnvioInforme"]] = relationship(
        back_populates="informe", cascade="all, delete-orphan", order_by="EnvioInforme.id"
    )


class FirmaDigital(Base):
    __tablename__ = "firmas_digitales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    informe_id: Mapped[int] = mapped_column(ForeignKey("informes_medicos.id"), nullable=False)
    medico_id: Mapped[int] = mapped_column(ForeignKey("medicos.id"), nullable=False)
    firma_hash: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 hex del contenido
    certificado_digital: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_firma: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fecha_firma: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    informe: Mapped["InformeMedico"] = relationship(back_populates="firmas")


class EnvioInforme(Base):
    __tablename__ = "envios_informes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    informe_id: Mapped[int] = mapped_column(ForeignKey("informes_medicos.id"), nullable=False)
    paciente_id: Mapped[int] = mapped_column(ForeignKey("pacientes.id"), nullable=False)
    metodo_envio: Mapped[MetodoEnvio] = mapped_column(enum_column(MetodoEnvio), default=MetodoEnvio.EMAIL, nullable=False)
    estado_envio: Mapped[EstadoEnvio] = mapped_column(
        enum_column(EstadoEnvio), default=EstadoEnvio.PENDIENTE, nullable=False
    )
    destinatario: Mapped[str] = mapped_column(String(120), nullable=False)
    observaciones: Mapped[str | None] = mapped_column(Text, nullable=True)
    fecha_envio: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    fecha_entrega: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    informe: Mapped["InformeMedico"] = relationship(back_populates="envios")
