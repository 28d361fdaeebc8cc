import os
import re
import glob
import hashlib
import dataclasses
import xml.etree.ElementTree as ElementTree

import magic


# Names of the files DSpace expects inside every SAF item directory.
CONTENTS_FILENAME = "contents"
DUBLIN_CORE_FILENAME = "dublin_core.xml"

# ORIGINAL_BUNDLE marks a primary content asset in the contents manifest.
ORIGINAL_BUNDLE = "ORIGINAL"
BUNDLE_TAG_PREFIX = "bundle:"

PDF_MIME_TYPE = "application/pdf"

DEFAULT_CHECKSUM = "md5"

# The problem record files written by find-problems, one per item directory.
DUPLICATES = "duplicates"
INVALID = "invalid"
MISSING = "missing"
PROBLEM_KINDS = (DUPLICATES, INVALID, MISSING)

# A contents line that was written with spaces instead of a tab.
LOOSE_BUNDLE_LINE = re.compile(r"^(?P<filename>.*?\S)\s+(?P<tag>bundle:\S+)\s*$")

ContentsEntry = dataclasses.make_dataclass(
    "ContentsEntry",
    [
        "filename",
        "bundle",
        "options",
        "line",
    ],
)


class MissingFileError(Exception):
    """Raised when a required file is missing."""


class InvalidPDFError(Exception):
    """Raised when a file listed as a PDF is not actually a PDF."""


class ChecksumError(Exception):
    """Raised when a checksum can't be generated for a file."""


class ContentsError(Exception):
    """Raised when a contents manifest can't be read or rewritten."""


class MetadataError(Exception):
    """Raised when a problem with the dublin_core.xml metadata is encountered."""


def list_item_directories(source_directory):
    """Return the names of the non-hidden subdirectories, sorted."""
    names = []
    for name in os.listdir(source_directory):
        if name.startswith("."):
            continue
        if os.path.isdir(os.path.join(source_directory, name)):
            names.append(name)
    return sorted(names)


def parse_contents_line(line):
    """Split one manifest line into a ContentsEntry, or None for blank lines."""
    raw = line.rstrip("\r\n")
    if not raw.strip():
        return None

    fields = [field.strip() for field in raw.split("\t")]
    filename = fields[0]
    bundle = None
    options = []

    if len(fields) == 1:
        match = LOOSE_BUNDLE_LINE.match(raw)
        if match:
            filename = match.group("filename").strip()
            fields = [filename, match.group("tag")]

    for field in fields[1:]:
        if not field:
            continue
        if bundle is None and field.startswith(BUNDLE_TAG_PREFIX):
            bundle = field[len(BUNDLE_TAG_PREFIX):]
        else:
            options.append(field)

    return ContentsEntry(
        filename=filename, bundle=bundle, options=options, line=raw
    )


def format_contents_line(filename, bundle=ORIGINAL_BUNDLE, options=()):
    fields = [filename]
    if bundle:
        fields.append(f"{BUNDLE_TAG_PREFIX}{bundle}")
    fields.extend(options)
    return "\t".join(fields)


def read_contents(contents_path):
    """Read a contents manifest, skipping blank lines."""
    if not os.path.isfile(contents_path):
        raise MissingFileError(f"{contents_path} not found")

    try:
        with open(contents_path, "r", encoding="utf-8") as contents_file:
            lines = contents_file.readlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ContentsError(f"unable to read {contents_path}: {e}")

    entries = []
    for line in lines:
        entry = parse_contents_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def bundle_documents(entries, bundle=ORIGINAL_BUNDLE):
    return [entry for entry in entries if entry.bundle == bundle]


def write_contents(contents_path, lines):
    try:
        with open(contents_path, "w", encoding="utf-8") as contents_file:
            for line in lines:
                contents_file.write(f"{line}\n")
    except OSError as e:
        raise ContentsError(f"unable to write {contents_path}: {e}")


def remove_contents_entries(contents_path, filenames):
    """Drop every manifest line naming one of filenames.

    Returns the number of lines removed. The manifest is only rewritten when
    something changed.
    """
    entries = read_contents(contents_path)
    kept = [entry for entry in entries if entry.filename not in filenames]
    removed = len(entries) - len(kept)
    if removed:
        write_contents(contents_path, [entry.line for entry in kept])
    return removed


def compute_checksum(file_path, algorithm=DEFAULT_CHECKSUM):
    """Return the hex digest of a file, read in chunks."""
    try:
        file_hash = hashlib.new(algorithm)
    except ValueError:
        raise ChecksumError(f"unsupported checksum algorithm {algorithm}")

    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                file_hash.update(chunk)
    except OSError as e:
        raise ChecksumError(f"unable to read {file_path}: {e}")
    return file_hash.hexdigest()


def detect_mime_type(file_path):
    return magic.from_file(file_path, mime=True)


def validate_pdf(file_path):
    """Ensure file_path exists and really is a PDF.

    Servers frequently answer a PDF request with an HTML "404 Not Found" page
    while still claiming application/pdf, so the content is sniffed instead of
    trusting the file extension.
    """
    if not os.path.isfile(file_path):
        raise MissingFileError(f"{file_path} not found")

    mime_type = detect_mime_type(file_path)
    if mime_type != PDF_MIME_TYPE:
        raise InvalidPDFError(f"{file_path} has mime type {mime_type}")
    return mime_type


def read_dublin_core(dublin_core_path):
    if not os.path.isfile(dublin_core_path):
        raise MissingFileError(f"{dublin_core_path} not found")
    try:
        return ElementTree.parse(dublin_core_path)
    except ElementTree.ParseError as e:
        raise MetadataError(f"error parsing {dublin_core_path}, {e}")


def find_dc_value(dublin_core_xml, element, qualifier=None):
    """Return the first stripped dcvalue text for element.qualifier, or ""."""
    for dcvalue in dublin_core_xml.getroot().iter("dcvalue"):
        if dcvalue.get("element") != element:
            continue
        value_qualifier = dcvalue.get("qualifier")
        if value_qualifier == "none":
            value_qualifier = None
        if value_qualifier != qualifier:
            continue
        text = (dcvalue.text or "").strip()
        if text:
            return text
    return ""


def add_dc_value(
    dublin_core_path, element, value, qualifier="none", language="en"
):
    """Append a dcvalue element to an existing dublin_core.xml."""
    dublin_core_xml = read_dublin_core(dublin_core_path)
    root = dublin_core_xml.getroot()
    if root.tag != "dublin_core":
        raise MetadataError(
            f"{dublin_core_path} root element is {root.tag}, not dublin_core"
        )

    dcvalue = ElementTree.SubElement(
        root, "dcvalue", element=element, qualifier=qualifier
    )
    if language:
        dcvalue.set("language", language)
    dcvalue.text = value

    ElementTree.indent(dublin_core_xml, space="  ")
    dublin_core_xml.write(
        dublin_core_path, encoding="utf-8", xml_declaration=True
    )
    return dcvalue


def problem_file_path(problems_path, item_name, kind):
    return os.path.join(problems_path, f"{item_name}.{kind}")


def clear_problem_records(problems_path, item_name):
    """Remove the problem files left by an earlier run for one item."""
    removed = []
    for kind in PROBLEM_KINDS:
        path = problem_file_path(problems_path, item_name, kind)
        if os.path.isfile(path):
            os.remove(path)
            removed.append(path)
    return removed


def append_problem_record(problems_path, item_name, kind, filename, checksum=None):
    os.makedirs(problems_path, mode=0o775, exist_ok=True)
    path = problem_file_path(problems_path, item_name, kind)
    record = filename if kind == MISSING else f"{filename}\t{checksum or ''}"
    with open(path, "a", encoding="utf-8") as problem_file:
        problem_file.write(f"{record}\n")
    return path


def read_problem_records(path):
    """Return (filename, checksum) pairs; checksum is None when absent."""
    records = []
    with open(path, "r", encoding="utf-8") as problem_file:
        for line in problem_file:
            line = line.strip()
            if not line:
                continue
            if "\t" in line:
                filename, checksum = line.split("\t", 1)
            else:
                # Older records separate the fields with spaces.
                parts = line.rsplit(None, 1)
                if len(parts) == 2 and re.fullmatch(r"[0-9a-fA-F]+", parts[1]):
                    filename, checksum = parts
                else:
                    filename, checksum = line, ""
            records.append((filename.strip(), checksum.strip() or None))
    return records


def find_problem_files(problems_directory, kinds=PROBLEM_KINDS):
    """Find the top-level problem files, returning (item, kind, path) tuples."""
    problem_files = []
    for kind in kinds:
        pattern = os.path.join(glob.escape(problems_directory), f"*.{kind}")
        for path in glob.glob(pattern):
            if not os.path.isfile(path):
                continue
            item_name = os.path.basename(path)[: -(len(kind) + 1)]
            problem_files.append((item_name, kind, path))
    return sorted(problem_files)
