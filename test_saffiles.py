import xml.etree.ElementTree as ElementTree
import pytest

import saffiles


PDF_BYTES = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Kids [] /Count 0 >>\nendobj\n"
    b"trailer\n<< /Root 1 0 R >>\n%%EOF\n"
)

HTML_BYTES = (
    b"<!DOCTYPE html>\n<html><head><title>404 Not Found</title></head>"
    b"<body><h1>Not Found</h1><p>The requested URL was not found on this "
    b"server.</p></body></html>\n"
)

DUBLIN_CORE = """<?xml version="1.0" encoding="UTF-8"?>
<dublin_core>
  <dcvalue element="title" language="en">  A Title  </dcvalue>
  <dcvalue element="title" qualifier="alternative" language="en">Other</dcvalue>
  <dcvalue element="relation" qualifier="uri" language="en">10.1000/xyz</dcvalue>
  <dcvalue element="subject" qualifier="none" language="en">Soils</dcvalue>
</dublin_core>
"""


class TestParseContentsLine:
    def test_tab_delimited(self):
        entry = saffiles.parse_contents_line("document-1.pdf\tbundle:ORIGINAL\n")
        assert entry.filename == "document-1.pdf"
        assert entry.bundle == "ORIGINAL"
        assert entry.options == []
        assert entry.line == "document-1.pdf\tbundle:ORIGINAL"

    def test_extra_options(self):
        entry = saffiles.parse_contents_line(
            "report.pdf\tbundle:ORIGINAL\tdescription:Main file"
        )
        assert entry.bundle == "ORIGINAL"
        assert entry.options == ["description:Main file"]

    def test_space_delimited(self):
        entry = saffiles.parse_contents_line("my file.pdf   bundle:ORIGINAL  ")
        assert entry.filename == "my file.pdf"
        assert entry.bundle == "ORIGINAL"

    def test_no_bundle(self):
        entry = saffiles.parse_contents_line("license.txt")
        assert entry.filename == "license.txt"
        assert entry.bundle is None

    def test_blank(self):
        assert saffiles.parse_contents_line("   \n") is None


def test_format_contents_line():
    assert (
        saffiles.format_contents_line("document-2.pdf")
        == "document-2.pdf\tbundle:ORIGINAL"
    )
    assert (
        saffiles.format_contents_line("a.pdf", "ORIGINAL", ["primary:true"])
        == "a.pdf\tbundle:ORIGINAL\tprimary:true"
    )


def test_read_contents(tmp_path):
    contents_path = tmp_path / "contents"
    contents_path.write_text(
        "document-1.pdf\tbundle:ORIGINAL\n\n"
        "license.txt\tbundle:LICENSE\n"
        "document-2.pdf\tbundle:ORIGINAL\n"
    )
    entries = saffiles.read_contents(str(contents_path))
    assert [entry.filename for entry in entries] == [
        "document-1.pdf",
        "license.txt",
        "document-2.pdf",
    ]
    documents = saffiles.bundle_documents(entries)
    assert [entry.filename for entry in documents] == [
        "document-1.pdf",
        "document-2.pdf",
    ]


def test_read_contents_missing(tmp_path):
    with pytest.raises(saffiles.MissingFileError, match="not found"):
        saffiles.read_contents(str(tmp_path / "contents"))


def test_remove_contents_entries(tmp_path):
    contents_path = tmp_path / "contents"
    contents_path.write_text(
        "document-1.pdf\tbundle:ORIGINAL\n"
        "document-2.pdf\tbundle:ORIGINAL\n"
        "license.txt\tbundle:LICENSE\n"
    )
    removed = saffiles.remove_contents_entries(
        str(contents_path), {"document-2.pdf", "absent.pdf"}
    )
    assert removed == 1
    assert contents_path.read_text() == (
        "document-1.pdf\tbundle:ORIGINAL\nlicense.txt\tbundle:LICENSE\n"
    )


class TestComputeChecksum:
    def test_md5(self, tmp_path):
        path = tmp_path / "a.pdf"
        path.write_bytes(b"abc")
        assert (
            saffiles.compute_checksum(str(path))
            == "900150983cd24fb0d6963f7d28e17f72"
        )

    def test_sha256(self, tmp_path):
        path = tmp_path / "a.pdf"
        path.write_bytes(b"abc")
        assert saffiles.compute_checksum(str(path), "sha256") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_unknown_algorithm(self, tmp_path):
        path = tmp_path / "a.pdf"
        path.write_bytes(b"abc")
        with pytest.raises(saffiles.ChecksumError, match="unsupported"):
            saffiles.compute_checksum(str(path), "not-a-hash")

    def test_unreadable(self, tmp_path):
        with pytest.raises(saffiles.ChecksumError, match="unable to read"):
            saffiles.compute_checksum(str(tmp_path / "missing.pdf"))


class TestValidatePdf:
    def test_valid(self, tmp_path):
        path = tmp_path / "document-1.pdf"
        path.write_bytes(PDF_BYTES)
        assert saffiles.validate_pdf(str(path)) == "application/pdf"

    def test_html_error_page(self, tmp_path):
        path = tmp_path / "document-1.pdf"
        path.write_bytes(HTML_BYTES)
        with pytest.raises(saffiles.InvalidPDFError, match="text/html"):
            saffiles.validate_pdf(str(path))

    def test_missing(self, tmp_path):
        with pytest.raises(saffiles.MissingFileError):
            saffiles.validate_pdf(str(tmp_path / "document-1.pdf"))


class TestDublinCore:
    def test_find_dc_value(self, tmp_path):
        path = tmp_path / "dublin_core.xml"
        path.write_text(DUBLIN_CORE)
        dublin_core_xml = saffiles.read_dublin_core(str(path))
        assert saffiles.find_dc_value(dublin_core_xml, "title") == "A Title"
        assert (
            saffiles.find_dc_value(dublin_core_xml, "title", "alternative")
            == "Other"
        )
        assert (
            saffiles.find_dc_value(dublin_core_xml, "relation", "uri")
            == "10.1000/xyz"
        )
        assert saffiles.find_dc_value(dublin_core_xml, "subject") == "Soils"
        assert saffiles.find_dc_value(dublin_core_xml, "creator") == ""

    def test_parse_error(self, tmp_path):
        path = tmp_path / "dublin_core.xml"
        path.write_text("<dublin_core><dcvalue>")
        with pytest.raises(saffiles.MetadataError, match="error parsing"):
            saffiles.read_dublin_core(str(path))

    def test_add_dc_value(self, tmp_path):
        path = tmp_path / "dublin_core.xml"
        path.write_text(DUBLIN_CORE)
        saffiles.add_dc_value(
            str(path), "type", "Article", qualifier="status", language="en"
        )

        root = ElementTree.parse(str(path)).getroot()
        added = root.findall("dcvalue")[-1]
        assert added.attrib == {
            "element": "type",
            "qualifier": "status",
            "language": "en",
        }
        assert added.text == "Article"
        assert len(root.findall("dcvalue")) == 5

    def test_add_dc_value_wrong_root(self, tmp_path):
        path = tmp_path / "dublin_core.xml"
        path.write_text("<metadata/>")
        with pytest.raises(saffiles.MetadataError, match="not dublin_core"):
            saffiles.add_dc_value(str(path), "type", "Article")


class TestProblemRecords:
    def test_append_and_read(self, tmp_path):
        problems_path = str(tmp_path / "checksums")
        saffiles.append_problem_record(
            problems_path, "7", saffiles.DUPLICATES, "document-2.pdf", "abc123"
        )
        saffiles.append_problem_record(
            problems_path, "7", saffiles.MISSING, "document-3.pdf"
        )

        assert (tmp_path / "checksums" / "7.duplicates").read_text() == (
            "document-2.pdf\tabc123\n"
        )
        assert (tmp_path / "checksums" / "7.missing").read_text() == (
            "document-3.pdf\n"
        )
        assert saffiles.read_problem_records(
            str(tmp_path / "checksums" / "7.missing")
        ) == [("document-3.pdf", None)]

    def test_read_space_separated(self, tmp_path):
        path = tmp_path / "3.duplicates"
        path.write_text("document-2.pdf    d41d8cd98f00b204e9800998ecf8427e\n\n")
        assert saffiles.read_problem_records(str(path)) == [
            ("document-2.pdf", "d41d8cd98f00b204e9800998ecf8427e")
        ]

    def test_clear(self, tmp_path):
        (tmp_path / "4.invalid").write_text("a.pdf\tabc\n")
        (tmp_path / "4.duplicates").write_text("b.pdf\tabc\n")
        (tmp_path / "5.invalid").write_text("c.pdf\tabc\n")
        removed = saffiles.clear_problem_records(str(tmp_path), "4")
        assert len(removed) == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == ["5.invalid"]

    def test_find_problem_files(self, tmp_path):
        (tmp_path / "2.duplicates").write_text("")
        (tmp_path / "10.invalid").write_text("")
        (tmp_path / "2.missing").write_text("")
        (tmp_path / "notes.txt").write_text("")
        (tmp_path / "nested.duplicates").mkdir()

        found = saffiles.find_problem_files(str(tmp_path))
        assert [(item, kind) for item, kind, _ in found] == [
            ("10", "invalid"),
            ("2", "duplicates"),
            ("2", "missing"),
        ]
        only_duplicates = saffiles.find_problem_files(
            str(tmp_path), [saffiles.DUPLICATES]
        )
        assert [item for item, _, _ in only_duplicates] == ["2"]


def test_list_item_directories(tmp_path):
    (tmp_path / "10").mkdir()
    (tmp_path / "2").mkdir()
    (tmp_path / ".hidden").mkdir()
    (tmp_path / "file.txt").write_text("")
    assert saffiles.list_item_directories(str(tmp_path)) == ["10", "2"]
