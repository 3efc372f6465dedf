"""Tests for CSV / XLSX company import."""
from __future__ import annotations

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from sleuth.importer import (
    CSV_TEMPLATE,
    MAX_REPORTED_ERRORS,
    decode_csv,
    dedup_key,
    import_csv,
    import_rows,
    import_xlsx,
    normalize_header,
)
from sleuth.models import Base, Company, CompanyStatus


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _companies(session: Session) -> list[Company]:
    return list(session.execute(select(Company).order_by(Company.id)).scalars().all())


CSV = """\
Company Name,Address,Phone,Website,Category,Rating,Reviews Count,Place ID
Acme Plumbing,1 Pipe St,555-0100,https://acme.test,Plumber,4.5,120,abc123
ACME PLUMBING,1 PIPE ST,555-0100,,,,,
,2 Nowhere,,,,,,
Bolt Electric,2 Wire Rd,555-0200,,Electrician,not-a-number,12.0,
,,,,,,,
"""


class TestHelpers:
    def test_normalize_header(self):
        assert normalize_header("  Company  Name ") == "company_name"
        assert normalize_header("Reviews Count") == "reviews_count"
        assert normalize_header(None) == ""

    def test_dedup_key_ignores_case_of_name_and_address(self):
        assert dedup_key("Acme", "1 Pipe St", "555") == dedup_key("ACME", "1 pipe st", "555")
        assert dedup_key("Acme", "1 Pipe St", "555") != dedup_key("Acme", "1 Pipe St", "556")

    def test_decode_csv_prefers_utf8(self):
        assert decode_csv("Caf\u00e9".encode("utf-8")) == "Caf\u00e9"
        assert decode_csv("\ufeffname".encode("utf-8")) == "name"
        assert decode_csv(b"\x93quoted\x94") == "\u201cquoted\u201d"

    def test_template_has_every_column(self):
        header = CSV_TEMPLATE.splitlines()[0].split(",")
        assert header[0] == "company_name"
        assert "place_id" in header


class TestImportCsv:
    def test_counts_and_rows(self, session):
        result = import_csv(CSV, session)

        assert result.total_rows == 4
        assert result.valid_rows == 3
        assert result.duplicates_removed == 1
        assert result.already_exists == 0
        assert result.companies_created == 2
        assert result.errors == 1
        assert result.error_rows[0]["row"] == 3
        assert result.error_rows[0]["error"] == "Invalid row data: company_name is required"
        assert result.error_rows[0]["details"]["address"] == "2 Nowhere"

        acme, bolt = _companies(session)
        assert acme.company_name == "Acme Plumbing"
        assert acme.rating == 4.5
        assert acme.reviews_count == 120
        assert acme.place_id == "abc123"
        assert acme.status == CompanyStatus.PENDING
        assert bolt.rating is None
        assert bolt.reviews_count == 12

    def test_second_import_finds_existing(self, session):
        import_csv(CSV, session)
        result = import_csv(CSV, session)

        assert result.companies_created == 0
        assert result.already_exists == 2
        assert len(_companies(session)) == 2

    def test_bytes_with_bom(self, session):
        content = "\ufeffcompany_name,website\nAcme,https://acme.test\n".encode("utf-8")
        result = import_csv(content, session)
        assert result.companies_created == 1
        assert _companies(session)[0].website == "https://acme.test"

    def test_error_rows_are_truncated(self, session):
        content = "company_name,address\n" + "".join(f",{i} Somewhere\n" for i in range(12))
        result = import_csv(content, session)
        assert result.errors == 12
        assert len(result.error_rows) == MAX_REPORTED_ERRORS

    def test_empty_input(self, session):
        result = import_csv("", session)
        assert result.total_rows == 0
        assert result.companies_created == 0

    def test_windows_1252_bytes(self, session):
        result = import_csv(b"company_name,address\nCaf\xe9 Bar,Main St\n", session)
        assert result.companies_created == 1
        assert _companies(session)[0].company_name == "Caf\u00e9 Bar"

    def test_out_of_range_numbers_are_dropped(self, session):
        result = import_csv("company_name,rating,reviews_count\nAcme,inf,1e999\nBolt,nan,nan\n", session)
        assert result.companies_created == 2
        for company in _companies(session):
            assert company.rating is None
            assert company.reviews_count is None


class TestImportRows:
    def test_numbers_from_spreadsheets(self, session):
        result = import_rows([{"company_name": "Acme", "rating": 4, "reviews_count": 7.0}], session)
        assert result.companies_created == 1
        acme = _companies(session)[0]
        assert acme.rating == 4.0
        assert acme.reviews_count == 7


class TestImportXlsx:
    def test_first_sheet(self, session, tmp_path):
        path = tmp_path / "companies.xlsx"
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(["Company Name", "Website", "Rating"])
        ws.append(["Acme Plumbing", "https://acme.test", 4.5])
        ws.append([None, None, None])
        ws.append(["Bolt Electric", None, None])
        wb.save(path)

        result = import_xlsx(path, session)

        assert result.total_rows == 2
        assert result.companies_created == 2
        acme, bolt = _companies(session)
        assert acme.website == "https://acme.test"
        assert acme.rating == 4.5
        assert bolt.website == ""

    def test_empty_workbook(self, session, tmp_path):
        path = tmp_path / "empty.xlsx"
        openpyxl.Workbook().save(path)

        result = import_xlsx(path, session)

        assert result.total_rows == 0
        assert _companies(session) == []
