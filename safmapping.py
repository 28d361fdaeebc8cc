import os

import pandas as pd


# Column headers looked up in the mapping CSV.
SERIAL_ID_COLUMN = "Serial ID"
DOI_COLUMN = "DOI"
TITLE_COLUMN = "Title"
JOURNAL_TITLE_COLUMN = "Journal Title"
OPTIONAL_COLUMNS = (DOI_COLUMN, TITLE_COLUMN, JOURNAL_TITLE_COLUMN)

# Row 1 holds the column headers, so data starts on spreadsheet row 2. SAF
# directories are named after the row of the spreadsheet they came from.
FIRST_DATA_ROW = 2


class MappingError(Exception):
    """Raised when the mapping file or one of its rows can't be used."""


def load_mapping(mapping_file):
    """Loads the mapping CSV, indexed by spreadsheet row number."""
    if not os.path.isfile(mapping_file):
        raise MappingError(f"mapping file not found at {mapping_file}")

    try:
        mapping = pd.read_csv(
            mapping_file,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
            encoding="utf-8-sig",
        )
    except (
        pd.errors.ParserError,
        pd.errors.EmptyDataError,
        UnicodeDecodeError,
    ) as e:
        raise MappingError(f"error parsing mapping file {mapping_file}: {e}")

    mapping.columns = [str(column).strip() for column in mapping.columns]
    if SERIAL_ID_COLUMN not in mapping.columns:
        raise MappingError(
            f"mapping file {mapping_file} has no '{SERIAL_ID_COLUMN}' column"
        )

    # Blank lines come through as NaN even with keep_default_na off.
    mapping = mapping.fillna("")
    for column in mapping.columns:
        mapping[column] = mapping[column].astype(str).str.strip()
    for column in OPTIONAL_COLUMNS:
        if column not in mapping.columns:
            mapping[column] = ""

    mapping.index = range(FIRST_DATA_ROW, FIRST_DATA_ROW + len(mapping))
    return mapping


def last_row(mapping):
    return FIRST_DATA_ROW + len(mapping) - 1


def find_duplicate_serial_ids(mapping):
    """Return {serial_id: [row numbers]} for every Serial ID used twice."""
    serial_ids = mapping[SERIAL_ID_COLUMN]
    serial_ids = serial_ids[serial_ids != ""]
    duplicated = serial_ids[serial_ids.duplicated(keep=False)]

    duplicates = {}
    for serial_id, rows in duplicated.groupby(duplicated):
        duplicates[serial_id] = [int(row) for row in rows.index]
    return duplicates


def serial_id_for_row(mapping, row_number):
    if row_number < FIRST_DATA_ROW or row_number > last_row(mapping):
        raise MappingError(
            f"row {row_number} is outside of the mapping file rows "
            f"{FIRST_DATA_ROW} to {last_row(mapping)}"
        )

    serial_id = mapping.at[row_number, SERIAL_ID_COLUMN]
    if not serial_id:
        raise MappingError(f"row {row_number} has no {SERIAL_ID_COLUMN}")
    return serial_id


def matching_rows(mapping, column, value):
    return [int(row) for row in mapping.index[mapping[column] == value]]


def verify_row(mapping, row_number, doi, title):
    """Check the mapping row against the item's own DOI or title.

    The DOI is not expected to be unique across the mapping file, so a match
    only has to include row_number. The title is only consulted when the DOI
    is absent or does not match. Returns the column that matched.
    """
    if not doi and not title:
        raise MappingError("unable to find a DOI or title to validate against")

    mismatches = []
    for column, value in ((DOI_COLUMN, doi), (TITLE_COLUMN, title)):
        if not value:
            continue
        rows = matching_rows(mapping, column, value)
        if row_number in rows:
            return column
        found = ", ".join(str(row) for row in rows) if rows else "none"
        mismatches.append(f"{column} '{value}' matches rows: {found}")

    raise MappingError(
        f"row {row_number} mismatch, " + "; ".join(mismatches)
    )


def describe_row(mapping, row_number):
    row = mapping.loc[row_number]
    description = f"row {row_number}, {SERIAL_ID_COLUMN} '{row[SERIAL_ID_COLUMN]}'"
    if row[JOURNAL_TITLE_COLUMN]:
        description += f", {JOURNAL_TITLE_COLUMN} '{row[JOURNAL_TITLE_COLUMN]}'"
    return description
