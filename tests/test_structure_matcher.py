"""
Structure matcher unit tests.

Tests cover:
  - full cascade: command → regional → division → role
  - regional match is exact ("VALE DO PARAIBA" never picks 1 or 3)
  - regional search scoped to the matched command
  - failed parent marks every descendant failed
  - containment in both directions; exact beats containment, closest key wins
  - role scoped by rank, failed without a rank, unreported without text
  - catalog loaded from the database
"""
import pytest

from roster.services.structure_matcher import StructureCatalog, Unit, match_structure


@pytest.fixture()
def catalog():
    return StructureCatalog(
        commands=[Unit(1, "COMANDO LESTE"), Unit(2, "COMANDO OESTE")],
        regionals=[
            Unit(10, "REGIONAL VALE DO PARAIBA 1 - SP", 1),
            Unit(11, "REGIONAL VALE DO PARAIBA 3 - SP", 1),
            Unit(12, "REGIONAL LITORAL - SP", 2),
        ],
        divisions=[
            Unit(100, "DIVISAO INVERNADA - SP", 10),
            Unit(101, "DIVISAO CENTRO - SP", 10),
            Unit(102, "DIVISAO NORTE - SP", 11),
            Unit(103, "DIVISAO NORTE NOVO - SP", 11),
        ],
        roles=[
            Unit(1000, "DIRETOR REGIONAL", "V"),
            Unit(1001, "DIRETOR DE DIVISAO", "VI"),
            Unit(1002, "INSTRUTOR", "VII"),
        ],
    )


def _match(catalog, command="Comando Leste", regional="Regional Vale do Paraíba I - SP",
           division="Divisão Invernada", role=None, rank=None):
    return match_structure(command, regional, division, role, rank, catalog=catalog)


# ═════════════════════════════════════════════════════════════════════════
# CASCADE
# ═════════════════════════════════════════════════════════════════════════

class TestCascade:
    def test_full_match(self, catalog):
        result = _match(catalog, role="Diretor Regional", rank="V")
        assert (result["command_id"], result["regional_id"], result["division_id"], result["role_id"]) == (
            1, 10, 100, 1000,
        )
        assert result["matched_fields"] == ["command", "regional", "division", "role"]
        assert result["failed_fields"] == []

    def test_regional_requires_exact_key(self, catalog):
        result = _match(catalog, regional="Regional Vale do Paraíba")
        assert result["regional_id"] is None
        assert result["division_id"] is None
        assert result["failed_fields"] == ["regional", "division"]

    def test_regional_numeral_variants(self, catalog):
        assert _match(catalog, regional="Vale do Paraiba III", division="Norte")["regional_id"] == 11
        assert _match(catalog, regional="VALE DO PARAIBA 1")["regional_id"] == 10

    def test_regional_scoped_to_command(self, catalog):
        assert _match(catalog, regional="Regional Litoral")["failed_fields"] == ["regional", "division"]
        result = _match(catalog, command="Comando Oeste", regional="Regional Litoral", division="")
        assert result["regional_id"] == 12
        assert result["failed_fields"] == ["division"]

    def test_failed_command_fails_descendants(self, catalog):
        result = _match(catalog, command="Comando Inexistente")
        assert result["matched_fields"] == []
        assert result["failed_fields"] == ["command", "regional", "division"]
        assert result["regional_id"] is None
        assert result["division_id"] is None

    def test_empty_text_never_matches(self, catalog):
        result = _match(catalog, command="", regional="", division="")
        assert result["failed_fields"] == ["command", "regional", "division"]


# ═════════════════════════════════════════════════════════════════════════
# CONTAINMENT
# ═════════════════════════════════════════════════════════════════════════

class TestContainment:
    def test_text_contains_candidate(self, catalog):
        assert _match(catalog, command="Leste Paulista")["command_id"] == 1
        assert _match(catalog, division="Divisão Invernada Velha")["division_id"] == 100

    def test_candidate_contains_text(self, catalog):
        assert _match(catalog, command="Oes", regional="Litoral", division="")["command_id"] == 2
        assert _match(catalog, division="Inver")["division_id"] == 100

    def test_exact_beats_containment(self, catalog):
        result = _match(catalog, regional="Vale do Paraiba 3", division="Norte")
        assert result["division_id"] == 102

    def test_closest_key_length_wins(self, catalog):
        result = _match(catalog, regional="Vale do Paraiba 3", division="Norte Nov")
        assert result["division_id"] == 103

    def test_division_scoped_to_regional(self, catalog):
        result = _match(catalog, division="Norte")
        assert result["division_id"] is None
        assert result["failed_fields"] == ["division"]


# ═════════════════════════════════════════════════════════════════════════
# ROLES
# ═════════════════════════════════════════════════════════════════════════

class TestRoles:
    @pytest.mark.parametrize("rank,expected", [("V", 1000), ("vi", 1001)])
    def test_role_scoped_by_rank(self, catalog, rank, expected):
        assert _match(catalog, role="Diretor", rank=rank)["role_id"] == expected

    def test_role_outside_rank_fails(self, catalog):
        result = _match(catalog, role="Diretor", rank="VII")
        assert result["role_id"] is None
        assert result["failed_fields"] == ["role"]

    def test_role_without_rank_fails(self, catalog):
        result = _match(catalog, role="Diretor Regional")
        assert result["role_id"] is None
        assert result["failed_fields"] == ["role"]
        assert result["matched_fields"] == ["command", "regional", "division"]

    def test_no_role_text_is_not_reported(self, catalog):
        result = _match(catalog, rank="V")
        assert "role" not in result["failed_fields"]
        assert "role" not in result["matched_fields"]


# ═════════════════════════════════════════════════════════════════════════
# DATABASE CATALOG
# ═════════════════════════════════════════════════════════════════════════

class TestCatalogLoad:
    def test_load_from_tables(self, structure):
        catalog = StructureCatalog.load()
        assert {u.id for u in catalog.regionals} == {structure["vp1"], structure["vp3"]}
        assert {u.parent for u in catalog.divisions} == {structure["vp1"], structure["vp3"]}

    def test_match_without_catalog_reads_database(self, structure):
        result = match_structure("Comando Leste", "Regional Vale do Paraíba III", "Norte", "Instrutor", "VII")
        assert result["regional_id"] == structure["vp3"]
        assert result["division_id"] == structure["norte"]
        assert result["role_id"] == structure["instructor"]
