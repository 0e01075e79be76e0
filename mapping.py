"""Wage-type and employee identifier resolution.

Both resolvers are built once per export run and then answer lookups in
constant time. They are shared by the file formatters and the API
connectors; the provider kind decides which mapping fields are consulted.
"""

import logging

from errors import ConfigurationError, MappingGapError
from models import AbsenceRecord, ProviderKind, WageTypeMapping, WorkPeriodRecord
from patterns import Patterns

logger = logging.getLogger(__name__)

# Provider-specific field first, then progressively more generic ones
CODE_FIELDS: dict[str, tuple[str, ...]] = {
    ProviderKind.DATEV_LOHN: ("datev_wage_type_code", "wage_type_code"),
    ProviderKind.LEXWARE_LOHN: ("lexware_wage_type_code", "wage_type_code"),
    ProviderKind.SAGE_LOHN: ("sage_wage_type_code", "datev_wage_type_code", "wage_type_code"),
    ProviderKind.SUCCESSFACTORS: ("successfactors_time_type_code", "wage_type_code"),
    ProviderKind.PERSONIO: ("wage_type_code",),
}

NAME_FIELDS: dict[str, tuple[str, ...]] = {
    ProviderKind.DATEV_LOHN: ("datev_wage_type_name", "wage_type_name"),
    ProviderKind.LEXWARE_LOHN: ("lexware_wage_type_name", "wage_type_name"),
    ProviderKind.SAGE_LOHN: ("sage_wage_type_name", "datev_wage_type_name", "wage_type_name"),
    ProviderKind.SUCCESSFACTORS: ("successfactors_time_type_name", "wage_type_name"),
    ProviderKind.PERSONIO: ("wage_type_name",),
}

# Generic regular-time code, used for unmapped work periods only
DEFAULT_WORK_CODES: dict[str, str] = {
    ProviderKind.DATEV_LOHN: "1000",
    ProviderKind.LEXWARE_LOHN: "100",
    ProviderKind.SAGE_LOHN: "1000",
    ProviderKind.SUCCESSFACTORS: "REGULAR",
}


def _first(mapping: WageTypeMapping, fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = getattr(mapping, name)
        if value:
            return value
    return None


class WageTypeResolver:
    """Category id -> provider code lookup for one provider kind."""

    def __init__(self, mappings: list[WageTypeMapping], kind: str):
        if kind not in CODE_FIELDS:
            raise ConfigurationError(f"No wage type rules for provider '{kind}'")
        self.kind = kind
        self._work: dict[str, WageTypeMapping] = {}
        self._absence: dict[str, WageTypeMapping] = {}
        self._special: dict[str, WageTypeMapping] = {}

        for mapping in mappings:
            if not mapping.is_active:
                continue
            if mapping.work_category_id:
                table, key = self._work, mapping.work_category_id
            elif mapping.absence_category_id:
                table, key = self._absence, mapping.absence_category_id
            else:
                table, key = self._special, mapping.special_category
            if key in table:
                raise ConfigurationError(
                    f"Category {key} has more than one active wage type mapping",
                    [f"Duplicate mappings: {table[key].id}, {mapping.id}"],
                )
            table[key] = mapping

    def _code(self, mapping: WageTypeMapping | None) -> str | None:
        if mapping is None:
            return None
        return _first(mapping, CODE_FIELDS[self.kind])

    def _name(self, mapping: WageTypeMapping | None) -> str | None:
        if mapping is None:
            return None
        return _first(mapping, NAME_FIELDS[self.kind])

    @property
    def default_work_code(self) -> str | None:
        return DEFAULT_WORK_CODES.get(self.kind)

    def is_work_mapped(self, category_id: str | None) -> bool:
        return bool(category_id) and self._code(self._work.get(category_id)) is not None

    def work_code(self, category_id: str | None) -> str | None:
        """Mapped code, else the provider's regular-time default."""
        code = self._code(self._work.get(category_id)) if category_id else None
        return code or self.default_work_code

    def absence_code(self, category_id: str | None) -> str | None:
        """Mapped code or None. Absences never fall back to a default."""
        if not category_id:
            return None
        return self._code(self._absence.get(category_id))

    def require_absence_code(self, category_id: str | None) -> str:
        code = self.absence_code(category_id)
        if code is None:
            raise MappingGapError(category_id, self.kind)
        return code

    def special_code(self, special_category: str) -> str | None:
        return self._code(self._special.get(special_category))

    def work_label(self, period: WorkPeriodRecord) -> str:
        """Mapping name (or category name) plus project, for CSV notes."""
        label = ""
        if period.work_category_id:
            mapping = self._work.get(period.work_category_id)
            if self._code(mapping):
                label = self._name(mapping) or period.work_category_name or ""
            else:
                label = period.work_category_name or ""
        if period.project_name:
            label = f"{label} - {period.project_name}" if label else period.project_name
        return label

    def absence_label(self, absence: AbsenceRecord) -> str:
        mapping = self._absence.get(absence.absence_category_id)
        return self._name(mapping) or absence.absence_category_name or ""


class EmployeeResolver:
    """Local employee -> provider identifier, per matching strategy.

    A missing preferred field falls back to the employee number with a
    warning. File exports may fall back further to the internal employee
    id, which always exists.
    """

    STRATEGIES = ("employeeNumber", "email", "employeeId")

    def __init__(
        self,
        strategy: str,
        fallback_to_employee_id: bool = False,
        numeric_ids: bool = False,
    ):
        if strategy not in self.STRATEGIES:
            raise ConfigurationError(f"Unknown employee match strategy '{strategy}'")
        self.strategy = strategy
        self.fallback_to_employee_id = fallback_to_employee_id
        self.numeric_ids = numeric_ids

    def resolve(self, record: WorkPeriodRecord | AbsenceRecord) -> str | int | None:
        if self.strategy == "employeeId":
            return record.employee_id

        if self.strategy == "email":
            if record.email and Patterns.EMAIL.match(record.email):
                return record.email
            logger.warning(
                "Email missing or malformed, falling back to employee number",
                extra={"employee_id": record.employee_id, "record_id": record.id},
            )

        if record.employee_number:
            if self.numeric_ids and Patterns.NUMERIC_ID.match(record.employee_number):
                return int(record.employee_number)
            return record.employee_number

        if self.fallback_to_employee_id:
            logger.warning(
                "Employee number not set, falling back to employeeId",
                extra={"employee_id": record.employee_id, "record_id": record.id},
            )
            return record.employee_id

        logger.warning(
            "Cannot determine employee identifier",
            extra={"employee_id": record.employee_id, "record_id": record.id},
        )
        return None
