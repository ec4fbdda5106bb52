"""
Backend de la clínica (FemiMed).

Estructura:
- config.py         : variables de entorno (.env) y logging
- db.py             : engine y sesiones SQLAlchemy
- models.py         : modelos ORM y enums
- services.py       : pacientes, médicos, especialidades, servicios, tipo de cambio
- consultas.py      : ciclo de vida de la consulta y finalización con cobro
- finanzas.py       : reportes financieros y exportación
- reportes.py       : render Excel (openpyxl) y PDF (reportlab)
- historico.py      : historia clínica
- remisiones.py     : remisiones entre médicos
- informes.py       : informes médicos, firma y envío
- notificaciones.py : emails (smtplib)
- importacion.py    : importación de historias desde Word
- api_main.py       : API REST (FastAPI)
- cli.py            : tareas administrativas por línea de comandos
"""
