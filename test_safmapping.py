import pytest

import safmapping


MAPPING_CSV = """Serial ID,DOI,Title,Journal Title
S-100,10.1000/abc,"Soil, Water and Crops",Journal A
S-101,10.1000/shared,Second Title,Journal B
S-102,10.1000/shared,Third Title,
,10.1000/empty,Untitled,
"""


@pytest.fixture
def mapping(tmp_path):
    mapping_path = tmp_path / "mapping.csv"
    mapping_path.write_text(MAPPING_CSV, encoding="utf-8")
    return safmapping.load_mapping(str(mapping_path))


def test_load_mapping(mapping):
    assert list(mapping.index) == [2, 3, 4, 5]
    assert mapping.at[2, "Title"] == "Soil, Water and Crops"
    assert mapping.at[4, "Journal Title"] == ""
    assert safmapping.last_row(mapping) == 5


def test_load_mapping_optional_columns(tmp_path):
    mapping_path = tmp_path / "mapping.csv"
    mapping_path.write_text("\ufeffSerial ID\n 0001 \n0002\n", encoding="utf-8")
    mapping = safmapping.load_mapping(str(mapping_path))
    assert mapping.at[2, "Serial ID"] == "0001"
    assert mapping.at[3, "DOI"] == ""


def test_load_mapping_without_serial_id(tmp_path):
    mapping_path = tmp_path / "mapping.csv"
    mapping_path.write_text("ID,DOI\n1,10.1000/abc\n")
    with pytest.raises(safmapping.MappingError, match="no 'Serial ID' column"):
        safmapping.load_mapping(str(mapping_path))


def test_load_mapping_missing(tmp_path):
    with pytest.raises(safmapping.MappingError, match="not found"):
        safmapping.load_mapping(str(tmp_path / "mapping.csv"))


def test_find_duplicate_serial_ids(tmp_path):
    mapping_path = tmp_path / "mapping.csv"
    mapping_path.write_text(
        "Serial ID,DOI,Title\nA,,\nB,,\nA,,\n,,\n,,\nB,,\nC,,\n"
    )
    mapping = safmapping.load_mapping(str(mapping_path))
    assert safmapping.find_duplicate_serial_ids(mapping) == {
        "A": [2, 4],
        "B": [3, 7],
    }


def test_find_duplicate_serial_ids_none(mapping):
    assert safmapping.find_duplicate_serial_ids(mapping) == {}


class TestSerialIdForRow:
    def test_found(self, mapping):
        assert safmapping.serial_id_for_row(mapping, 3) == "S-101"

    def test_header_row(self, mapping):
        with pytest.raises(safmapping.MappingError, match="outside"):
            safmapping.serial_id_for_row(mapping, 1)

    def test_past_end(self, mapping):
        with pytest.raises(safmapping.MappingError, match="rows 2 to 5"):
            safmapping.serial_id_for_row(mapping, 6)

    def test_empty(self, mapping):
        with pytest.raises(safmapping.MappingError, match="has no Serial ID"):
            safmapping.serial_id_for_row(mapping, 5)


class TestVerifyRow:
    def test_doi(self, mapping):
        assert (
            safmapping.verify_row(mapping, 2, "10.1000/abc", "") == "DOI"
        )

    def test_shared_doi(self, mapping):
        assert (
            safmapping.verify_row(mapping, 4, "10.1000/shared", "") == "DOI"
        )

    def test_title_fallback(self, mapping):
        assert (
            safmapping.verify_row(mapping, 3, "10.1000/wrong", "Second Title")
            == "Title"
        )

    def test_mismatch(self, mapping):
        with pytest.raises(
            safmapping.MappingError, match=r"row 2 mismatch.*rows: 3, 4"
        ):
            safmapping.verify_row(mapping, 2, "10.1000/shared", "")

    def test_nothing_to_match(self, mapping):
        with pytest.raises(safmapping.MappingError, match="DOI or title"):
            safmapping.verify_row(mapping, 2, "", "")


def test_describe_row(mapping):
    assert safmapping.describe_row(mapping, 2) == (
        "row 2, Serial ID 'S-100', Journal Title 'Journal A'"
    )
    assert safmapping.describe_row(mapping, 4) == "row 4, Serial ID 'S-102'"
