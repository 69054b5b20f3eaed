"""
Demo catalog seed.

Idempotently inserts the FIEC roles, three demo users, the four process
types and the three published templates with their steps.  Rows are
matched on their natural keys (role code, user email, process type code),
so running the seed twice changes nothing.

Usage:
    flask seed-demo-catalog
"""

import logging

from procflow.models import _utcnow, db
from procflow.models.auth import Role, User, UserRole
from procflow.models.catalog import ProcessTemplate, ProcessType, StepTemplate

logger = logging.getLogger(__name__)

ROLES = [
    ("ADMIN", "Administrador", "Acceso total al sistema"),
    ("DEAN", "Decano", "Decano de la FIEC"),
    ("SUBDEAN", "Subdecano", "Subdecano de la FIEC"),
    ("DIRECTOR", "Director de Carrera", "Director de carrera"),
    ("SECRETARY", "Secretaría", "Personal de secretaría"),
    ("PROFESSOR", "Docente", "Docente de la FIEC"),
]

USERS = [
    ("Dr. Carlos Mendoza", "carlos.mendoza@fiec.edu.ec", ["ADMIN", "DEAN"]),
    ("Dra. María González", "maria.gonzalez@fiec.edu.ec", ["SUBDEAN", "DIRECTOR"]),
    ("Ing. Juan Pérez", "juan.perez@fiec.edu.ec", ["SECRETARY", "PROFESSOR"]),
]

PROCESS_TYPES = [
    ("EVAL_DOCENTE", "Evaluación Docente", "Proceso de evaluación semestral de desempeño docente"),
    ("ACRED_CARRERA", "Acreditación de Carrera", "Proceso de acreditación de carreras ante organismos externos"),
    ("INFORME_GESTION", "Informe de Gestión", "Informe mensual de gestión institucional"),
    ("PLAN_ACADEMICO", "Plan Académico", "Planificación académica semestral"),
]

# process type code → (template description, [(title, description, required, reviewer role code)])
TEMPLATES = {
    "EVAL_DOCENTE": ("Plantilla estándar para evaluación docente", [
        ("Carga de Evidencias", "Cargar evidencias de desempeño docente", True, "SECRETARY"),
        ("Revisión por Director", "Revisión y validación por director de carrera", True, "DIRECTOR"),
        ("Aprobación Subdecano", "Aprobación final por subdecano", True, "SUBDEAN"),
    ]),
    "ACRED_CARRERA": ("Plantilla para acreditación", [
        ("Recopilación de Documentos", "Reunir documentación para acreditación", True, "SECRETARY"),
        ("Validación Técnica", "Validación técnica de documentos", True, "DIRECTOR"),
    ]),
    "INFORME_GESTION": ("Plantilla para informes de gestión", [
        ("Elaboración de Informe", "Redacción del informe mensual", True, "SECRETARY"),
        ("Revisión Decano", "Revisión y aprobación por decano", True, "DEAN"),
    ]),
}


def seed_demo_data() -> dict:
    """Insert whatever part of the demo catalog is missing.

    Returns:
        Counts of rows created per kind.
    """
    created = {"roles": 0, "users": 0, "process_types": 0, "templates": 0}

    roles = {}
    for code, name, description in ROLES:
        role = Role.query.filter_by(code=code).first()
        if role is None:
            role = Role(code=code, name=name, description=description)
            db.session.add(role)
            created["roles"] += 1
        roles[code] = role
    db.session.flush()

    users = {}
    for full_name, email, role_codes in USERS:
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(full_name=full_name, email=email, is_active=True)
            db.session.add(user)
            db.session.flush()
            for code in role_codes:
                db.session.add(UserRole(user_id=user.id, role_id=roles[code].id))
            created["users"] += 1
        users[email] = user
    admin = users[USERS[0][1]]

    types = {}
    for code, name, description in PROCESS_TYPES:
        pt = ProcessType.query.filter_by(code=code).first()
        if pt is None:
            pt = ProcessType(code=code, name=name, description=description,
                             active=True, created_by=admin.id)
            db.session.add(pt)
            created["process_types"] += 1
        types[code] = pt
    db.session.flush()

    for type_code, (description, steps) in TEMPLATES.items():
        pt = types[type_code]
        if ProcessTemplate.query.filter_by(process_type_id=pt.id).first() is not None:
            continue
        tpl = ProcessTemplate(
            process_type_id=pt.id,
            description=description,
            version=1,
            is_published=True,
            is_latest=True,
            published_at=_utcnow(),
            created_by=admin.id,
        )
        for ord_, (title, step_desc, required, role_code) in enumerate(steps, start=1):
            tpl.steps.append(StepTemplate(
                ord=ord_, title=title, description=step_desc,
                required=required, reviewer_role_id=roles[role_code].id,
            ))
        db.session.add(tpl)
        created["templates"] += 1

    db.session.commit()
    logger.info("Demo catalog seeded: %s", created)
    return created
