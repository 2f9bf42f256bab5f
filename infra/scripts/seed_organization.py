from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from orgscope.domain.hierarchy import UnitType  # noqa: E402
from orgscope.domain.models import OrgUnitCreate  # noqa: E402
from orgscope.services.errors import NotFoundError  # noqa: E402
from orgscope.services.org_unit_service import OrgUnitService  # noqa: E402

logger = logging.getLogger("seed_organization")

# (code, name, type, parent code, max staff)
UNITS: list[tuple[str, str, UnitType, str | None, int | None]] = [
    ("DESPACHO", "Despacho del Alcalde", UnitType.DIRECCION, None, 10),
    ("SECGEN", "Secretaría General", UnitType.DIRECCION, None, 15),
    ("DIR-FIN", "Dirección de Finanzas", UnitType.DIRECCION, None, 50),
    ("DIR-OBRAS", "Dirección de Obras Públicas", UnitType.DIRECCION, None, 80),
    ("DIR-RRHH", "Dirección de Recursos Humanos", UnitType.DIRECCION, None, 30),
    ("DIR-TI", "Dirección de Tecnología e Información", UnitType.DIRECCION, None, 25),
    ("COORD-CONT", "Coordinación de Contabilidad", UnitType.COORDINACION, "DIR-FIN", 15),
    ("COORD-PRES", "Coordinación de Presupuesto", UnitType.COORDINACION, "DIR-FIN", 10),
    ("COORD-TES", "Coordinación de Tesorería", UnitType.COORDINACION, "DIR-FIN", 12),
    ("COORD-PROY", "Coordinación de Proyectos", UnitType.COORDINACION, "DIR-OBRAS", 20),
    ("COORD-MANT", "Coordinación de Mantenimiento", UnitType.COORDINACION, "DIR-OBRAS", 30),
    ("COORD-NOM", "Coordinación de Nómina", UnitType.COORDINACION, "DIR-RRHH", 8),
    ("DEPT-CP", "Departamento de Cuentas por Pagar", UnitType.DEPARTAMENTO, "COORD-CONT", 5),
    ("DEPT-CC", "Departamento de Cuentas por Cobrar", UnitType.DEPARTAMENTO, "COORD-CONT", 5),
    ("UNID-ARCH", "Unidad de Archivo Contable", UnitType.UNIDAD, "DEPT-CP", 3),
    ("SEC-PAGOS", "Sección de Pagos a Proveedores", UnitType.SECCION, "UNID-ARCH", 2),
    ("OF-VENT", "Oficina de Ventanilla", UnitType.OFICINA, "SEC-PAGOS", 2),
]


def seed(service: OrgUnitService | None = None) -> int:
    service = service or OrgUnitService()
    created = 0
    ids: dict[str, str] = {}
    for code, name, unit_type, parent_code, max_staff in UNITS:
        try:
            ids[code] = service.get_by_code(code).id
            continue
        except NotFoundError:
            pass
        unit = service.create(
            OrgUnitCreate(
                code=code,
                name=name,
                unit_type=unit_type,
                parent_id=ids[parent_code] if parent_code else None,
                max_staff=max_staff,
            )
        )
        ids[code] = unit.id
        created += 1
    logger.info("seeded %d org units (%d already present)", created, len(UNITS) - created)
    return created


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    seed()
