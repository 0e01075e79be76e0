"""Tests for wage-type and employee identifier resolution."""

import logging
from decimal import Decimal

import pytest

from errors import ConfigurationError, MappingGapError
from mapping import EmployeeResolver, WageTypeResolver
from models import ProviderKind, WageTypeMapping


# ---------------------------------------------------------------------------
# WageTypeMapping: exactly one source category
# ---------------------------------------------------------------------------

class TestWageTypeMapping:

    def test_default_factor(self):
        mapping = WageTypeMapping(id="m", work_category_id="cat")
        assert mapping.factor == Decimal("1.00")

    @pytest.mark.parametrize(
        "fields",
        [
            {},
            {"work_category_id": "a", "absence_category_id": "b"},
            {"absence_category_id": "b", "special_category": "overtime"},
        ],
    )
    def test_rejects_zero_or_several_sources(self, fields):
        with pytest.raises(ValueError):
            WageTypeMapping(id="m", **fields)

    def test_rejects_unknown_special_category(self):
        with pytest.raises(ValueError):
            WageTypeMapping(id="m", special_category="night_shift")


# ---------------------------------------------------------------------------
# WageTypeResolver: per-provider code chains
# ---------------------------------------------------------------------------

class TestWageTypeResolver:

    @pytest.mark.parametrize(
        "kind, expected",
        [
            (ProviderKind.DATEV_LOHN, "D1"),
            (ProviderKind.LEXWARE_LOHN, "L1"),
            (ProviderKind.SAGE_LOHN, "S1"),
            (ProviderKind.SUCCESSFACTORS, "SF1"),
            (ProviderKind.PERSONIO, "G1"),
        ],
    )
    def test_provider_field_wins(self, make_mapping, kind, expected):
        mapping = make_mapping(
            work_category_id="cat",
            wage_type_code="G1",
            datev_wage_type_code="D1",
            lexware_wage_type_code="L1",
            sage_wage_type_code="S1",
            successfactors_time_type_code="SF1",
        )
        assert WageTypeResolver([mapping], kind).work_code("cat") == expected

    def test_sage_falls_back_to_datev_then_generic(self, make_mapping):
        datev_only = make_mapping(work_category_id="a", wage_type_code="G", datev_wage_type_code="D")
        generic_only = make_mapping(work_category_id="b", wage_type_code="G")
        resolver = WageTypeResolver([datev_only, generic_only], ProviderKind.SAGE_LOHN)

        assert resolver.work_code("a") == "D"
        assert resolver.work_code("b") == "G"

    @pytest.mark.parametrize(
        "kind, default",
        [
            (ProviderKind.DATEV_LOHN, "1000"),
            (ProviderKind.LEXWARE_LOHN, "100"),
            (ProviderKind.SAGE_LOHN, "1000"),
            (ProviderKind.SUCCESSFACTORS, "REGULAR"),
        ],
    )
    def test_unmapped_work_uses_default(self, kind, default):
        resolver = WageTypeResolver([], kind)
        assert resolver.work_code("unknown") == default
        assert resolver.work_code(None) == default
        assert not resolver.is_work_mapped("unknown")

    def test_unmapped_absence_is_never_defaulted(self):
        resolver = WageTypeResolver([], ProviderKind.DATEV_LOHN)
        assert resolver.absence_code("sick") is None
        with pytest.raises(MappingGapError) as exc:
            resolver.require_absence_code("sick")
        assert exc.value.category_id == "sick"

    def test_inactive_mappings_are_ignored(self, make_mapping):
        mapping = make_mapping(absence_category_id="sick", wage_type_code="1650", is_active=False)
        assert WageTypeResolver([mapping], ProviderKind.DATEV_LOHN).absence_code("sick") is None

    def test_duplicate_active_mapping_is_rejected(self, make_mapping):
        mappings = [
            make_mapping(absence_category_id="sick", wage_type_code="1650"),
            make_mapping(absence_category_id="sick", wage_type_code="1651"),
        ]
        with pytest.raises(ConfigurationError):
            WageTypeResolver(mappings, ProviderKind.DATEV_LOHN)

    def test_special_category(self, make_mapping):
        mapping = make_mapping(special_category="overtime", wage_type_code="1900")
        resolver = WageTypeResolver([mapping], ProviderKind.DATEV_LOHN)
        assert resolver.special_code("overtime") == "1900"
        assert resolver.special_code("holiday_compensation") is None

    def test_work_label_joins_project(self, make_mapping, make_period):
        mapping = make_mapping(work_category_id="cat", wage_type_code="1900", wage_type_name="Überstunden")
        resolver = WageTypeResolver([mapping], ProviderKind.DATEV_LOHN)

        mapped = make_period(work_category_id="cat", work_category_name="Overtime", project_name="Website")
        unmapped = make_period(work_category_id="other", work_category_name="Support")
        project_only = make_period(project_name="Website")

        assert resolver.work_label(mapped) == "Überstunden - Website"
        assert resolver.work_label(unmapped) == "Support"
        assert resolver.work_label(project_only) == "Website"

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError):
            WageTypeResolver([], "workday")


# ---------------------------------------------------------------------------
# EmployeeResolver: strategies and fallbacks
# ---------------------------------------------------------------------------

class TestEmployeeResolver:

    def test_employee_number(self, make_period):
        assert EmployeeResolver("employeeNumber").resolve(make_period(employee_number="0042")) == "0042"

    def test_numeric_ids_become_int(self, make_period):
        resolver = EmployeeResolver("employeeNumber", numeric_ids=True)
        assert resolver.resolve(make_period(employee_number="1042")) == 1042
        assert resolver.resolve(make_period(employee_number="P-7")) == "P-7"

    def test_email_falls_back_to_number(self, make_period, caplog):
        resolver = EmployeeResolver("email")
        assert resolver.resolve(make_period(email="a@example.com")) == "a@example.com"
        with caplog.at_level(logging.WARNING):
            assert resolver.resolve(make_period(email=None, employee_number="1001")) == "1001"
            assert resolver.resolve(make_period(email="not-an-address", employee_number="1002")) == "1002"
        assert "falling back" in caplog.text

    def test_employee_id_fallback_for_files(self, make_period):
        period = make_period(employee_number=None)
        assert EmployeeResolver("employeeNumber", fallback_to_employee_id=True).resolve(period) == "emp_1"

    def test_unresolvable_returns_none(self, make_period):
        assert EmployeeResolver("employeeNumber").resolve(make_period(employee_number=None)) is None

    def test_employee_id_strategy(self, make_absence):
        assert EmployeeResolver("employeeId").resolve(make_absence()) == "emp_1"

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            EmployeeResolver("badge")
