import os
import re
import random
import shutil
import logging
import hashlib
from datetime import datetime

import click
import magic
import yaml

import saffiles
import safmapping


# find-problems writes its problem record files into this subdirectory of the
# write directory.
CHECKSUM_SUBDIR = "checksums"

# deduplicate renames the surviving documents of a set to DOCUMENT_PREFIX
# followed by their position, e.g. "document-1.pdf".
DOCUMENT_PREFIX = "document-"

BATCH_PREFIX = "batch_"

# Appended to a Serial ID when a directory with that name already exists.
DUPLICATE_SUFFIX = ".duplicate-"

ANALYSIS_LOG_PREFIX = "analysis"
CHANGES_LOG_PREFIX = "changes"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# The shake algorithms need a digest length and can't be used here.
CHECKSUM_ALGORITHMS = sorted(
    name for name in hashlib.algorithms_guaranteed if not name.startswith("shake_")
)

PROBLEM_LABELS = {
    saffiles.DUPLICATES: "duplicate",
    saffiles.INVALID: "invalid",
    saffiles.MISSING: "missing",
}

logger = logging.getLogger("saftools")


class DocumentError(Exception):
    """Raised when a document listed in a contents file can't be used."""


class RenameError(Exception):
    """Raised when the documents of a set could not be renamed."""


class Reporter:
    """Sends job output to the console and to the log file.

    Everything goes to the log. On the console, the normal mode prints every
    line, silent prints nothing, and progress replaces the line output with a
    progress bar while still showing warnings and errors (unless silent was
    asked for as well).
    """

    def __init__(self, log=logger, silent=False, progress=False, color=True):
        self.log = log
        self.silent = silent
        self.progress = progress
        self.color = None if color else False

    @property
    def verbose(self):
        return not self.silent and not self.progress

    def _echo(self, message, depth=0, **styles):
        click.secho(" " * depth + message, color=self.color, **styles)

    def record(self, message):
        self.log.info(message)

    def title(self, message):
        self.log.info(f"===== {message} =====")
        if self.verbose:
            click.echo()
            self._echo(message, fg="yellow", bold=True)

    def info(self, message, depth=0):
        self.log.info(message)
        if self.verbose:
            self._echo(message, depth)

    def warning(self, message, depth=0):
        self.log.warning(message)
        if not self.silent:
            self._echo(f"WARNING: {message}", depth, fg="yellow")

    def error(self, message, depth=0):
        self.log.error(message)
        if not self.silent:
            self._echo(f"ERROR: {message}", depth, fg="red", bold=True)

    def track(self, items, label):
        if not self.progress:
            yield from items
            return
        with click.progressbar(items, label=label, color=self.color) as bar:
            yield from bar


def default_log_file(prefix):
    return f"{prefix}-{datetime.now().strftime('%Y_%m_%d')}.log"


def setup_logging(write_directory, log_file):
    """Point the saftools logger at a log file inside write_directory."""
    log_path = os.path.join(write_directory, log_file)
    if os.path.isdir(log_path):
        raise click.ClickException(
            f"The log file cannot be a directory '{log_path}'."
        )

    try:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as e:
        raise click.ClickException(
            f"Unable to write to log file '{log_path}', {e}."
        )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Only one job runs per process, drop the handler of any earlier run.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(file_handler)
    logger.setLevel(logging.INFO)
    return log_path


def load_config(config_file):
    """Loads the YAML file of option defaults, keyed by command name."""
    try:
        with open(config_file, encoding="utf-8") as config_stream:
            config = yaml.load(config_stream, Loader=yaml.FullLoader)
    except FileNotFoundError:
        click.echo(f"Error: Config file not found at {config_file}")
        return None
    except yaml.YAMLError as e:
        click.echo(f"Error parsing config file: {e}")
        return None

    if config is None:
        return {}
    if not isinstance(config, dict) or not all(
        isinstance(options, dict) for options in config.values()
    ):
        click.echo(
            f"Error: {config_file} must map command names to option defaults."
        )
        return None

    # Accept option names as written on the command line.
    return {
        command: {
            str(name).lstrip("-").replace("-", "_"): value
            for name, value in options.items()
        }
        for command, options in config.items()
    }


def find_problematic_pdfs(
    source_directory,
    problems_path,
    reporter,
    algorithm=saffiles.DEFAULT_CHECKSUM,
    contents_file=saffiles.CONTENTS_FILENAME,
    bundle=saffiles.ORIGINAL_BUNDLE,
):
    """Validate the PDFs listed by every item's contents file.

    Missing, invalid, and duplicate PDFs are recorded in "<item>.missing",
    "<item>.invalid", and "<item>.duplicates" files inside problems_path.
    Returns True if any item had a missing or invalid PDF.
    """
    reporter.title(f"Analyzing Source Directory: {source_directory}")

    directories = saffiles.list_item_directories(source_directory)
    if not directories:
        reporter.warning(
            f"No Sub-Directories Found for Source Directory: '{source_directory}'.",
            2,
        )
        return False

    failure = False
    for directory_name in reporter.track(directories, "Analyzing"):
        item_path = os.path.join(source_directory, directory_name)
        contents_path = os.path.join(item_path, contents_file)
        reporter.title(f"Processing Directory: {directory_name}")

        for removed in saffiles.clear_problem_records(
            problems_path, directory_name
        ):
            reporter.record(f"Removing existing problems file: '{removed}'")

        try:
            entries = saffiles.read_contents(contents_path)
        except saffiles.MissingFileError:
            reporter.warning(f"Missing Contents File: '{contents_path}'.", 2)
            continue
        except saffiles.ContentsError as e:
            reporter.error(f"{e}.", 2)
            failure = True
            continue

        documents = saffiles.bundle_documents(entries, bundle)
        if not documents:
            reporter.warning(f"Empty Contents File: '{contents_path}'.", 2)
            continue

        if validate_documents(
            item_path,
            directory_name,
            documents,
            problems_path,
            reporter,
            algorithm,
        ):
            failure = True

    return failure


def record_problem(problems_path, item_name, kind, reporter, filename, checksum=None):
    try:
        path = saffiles.append_problem_record(
            problems_path, item_name, kind, filename, checksum
        )
    except OSError as e:
        reporter.error(f"Failed to write {kind} record for '{filename}', {e}.", 6)
        return False
    reporter.record(f"Writing '{filename}' to '{path}'")
    return True


def validate_documents(
    item_path, item_name, documents, problems_path, reporter, algorithm
):
    """Check every document of one item, the first of identical PDFs wins."""
    failure = False
    checksums = set()

    for document in documents:
        pdf_path = os.path.join(item_path, document.filename)
        reporter.info(f"- PDF '{document.filename}'", 2)

        if not os.path.isfile(pdf_path):
            reporter.error(f"Missing PDF for '{pdf_path}'.", 4)
            record_problem(
                problems_path, item_name, saffiles.MISSING, reporter,
                document.filename,
            )
            failure = True
            continue

        try:
            saffiles.validate_pdf(pdf_path)
        except (saffiles.InvalidPDFError, saffiles.MissingFileError) as e:
            reporter.error(f"Invalid PDF, {e}.", 4)
            try:
                checksum = saffiles.compute_checksum(pdf_path, algorithm)
            except saffiles.ChecksumError as e:
                reporter.error(f"PDF Checksum generation failed, {e}.", 4)
                checksum = None
            record_problem(
                problems_path, item_name, saffiles.INVALID, reporter,
                document.filename, checksum,
            )
            failure = True
            continue

        try:
            checksum = saffiles.compute_checksum(pdf_path, algorithm)
        except saffiles.ChecksumError as e:
            reporter.error(f"PDF Checksum generation failed, {e}.", 4)
            failure = True
            continue

        if checksum in checksums:
            reporter.info("Is duplicate PDF.", 4)
            record_problem(
                problems_path, item_name, saffiles.DUPLICATES, reporter,
                document.filename, checksum,
            )
        else:
            reporter.info("Is unique PDF.", 4)
            checksums.add(checksum)

    return failure


def rename_directories(
    source_directory, mapping, reporter, verify=True, validate_only=False
):
    """Rename the row numbered item directories to their Serial IDs.

    Raises MappingError when the mapping file itself is unusable. Problems
    with single directories are reported and make the return value True.
    """
    reporter.title(f"Renaming Directories In: {source_directory}")

    duplicates = safmapping.find_duplicate_serial_ids(mapping)
    if duplicates:
        for serial_id, rows in duplicates.items():
            rows_text = ", ".join(str(row) for row in rows)
            reporter.error(
                f"Serial ID '{serial_id}' is used by more than one row: {rows_text}.",
                2,
            )
        raise safmapping.MappingError(
            f"{len(duplicates)} duplicated Serial ID(s) in the mapping file"
        )

    directories = [
        name
        for name in saffiles.list_item_directories(source_directory)
        if re.fullmatch(r"[0-9]+", name)
    ]
    directories.sort(key=int)
    if not directories:
        reporter.warning(
            f"No row numbered directories found in '{source_directory}'.", 2
        )
        return False

    failure = False
    for directory_name in reporter.track(directories, "Renaming"):
        try:
            rename_directory(
                source_directory,
                directory_name,
                mapping,
                reporter,
                verify,
                validate_only,
            )
        except (
            safmapping.MappingError,
            saffiles.MissingFileError,
            saffiles.MetadataError,
        ) as e:
            reporter.error(f"Cannot rename '{directory_name}', {e}.", 2)
            failure = True
        except OSError as e:
            reporter.error(f"Failed to move '{directory_name}', {e}.", 2)
            failure = True

    return failure


def rename_directory(
    source_directory,
    directory_name,
    mapping,
    reporter,
    verify=True,
    validate_only=False,
):
    """Rename one directory, returning its new name."""
    item_path = os.path.join(source_directory, directory_name)
    row_number = int(directory_name)

    serial_id = safmapping.serial_id_for_row(mapping, row_number)
    if serial_id in (".", "..") or "/" in serial_id or os.sep in serial_id:
        raise safmapping.MappingError(
            f"Serial ID '{serial_id}' is not a valid directory name"
        )
    reporter.info(
        f"{directory_name}: {safmapping.describe_row(mapping, row_number)}", 2
    )

    if serial_id == directory_name:
        reporter.info(f"Already named '{serial_id}'.", 4)
        return directory_name

    if verify:
        dublin_core_xml = saffiles.read_dublin_core(
            os.path.join(item_path, saffiles.DUBLIN_CORE_FILENAME)
        )
        doi = saffiles.find_dc_value(dublin_core_xml, "relation", "uri")
        title = saffiles.find_dc_value(dublin_core_xml, "title")
        column = safmapping.verify_row(mapping, row_number, doi, title)
        reporter.info(f"Matched on {column}.", 4)

    if validate_only:
        reporter.info(f"Would rename '{directory_name}' to '{serial_id}'.", 4)
        return serial_id

    new_name = serial_id
    while os.path.exists(os.path.join(source_directory, new_name)):
        new_name = f"{serial_id}{DUPLICATE_SUFFIX}{random.randint(0, 32767)}"
    if new_name != serial_id:
        reporter.warning(
            f"Duplicate Serial ID detected, renaming to '{new_name}'.", 4
        )

    os.rename(item_path, os.path.join(source_directory, new_name))
    reporter.info(f"Renamed '{directory_name}' to '{new_name}'.", 4)
    return new_name


def find_contents_files(source_directory, contents_file=saffiles.CONTENTS_FILENAME):
    contents_paths = []
    for directory_path, directory_names, file_names in os.walk(source_directory):
        directory_names[:] = sorted(
            name for name in directory_names if not name.startswith(".")
        )
        if contents_file in file_names:
            contents_paths.append(os.path.join(directory_path, contents_file))
    return sorted(contents_paths)


def deduplicate_contents(
    source_directory,
    reporter,
    algorithm=saffiles.DEFAULT_CHECKSUM,
    prefix=DOCUMENT_PREFIX,
    preserve=False,
    contents_file=saffiles.CONTENTS_FILENAME,
    bundle=saffiles.ORIGINAL_BUNDLE,
):
    """Remove duplicate documents from every set and renumber the rest.

    Returns True if any set was skipped or failed.
    """
    contents_paths = find_contents_files(source_directory, contents_file)
    if not contents_paths:
        reporter.error(
            f"Did not find any files named '{contents_file}' inside of the "
            f"directory '{source_directory}'."
        )
        return True

    failure = False
    for contents_path in reporter.track(contents_paths, "Deduplicating"):
        reporter.title(f"Now Processing Set: {contents_path}")
        try:
            deduplicate_set(
                contents_path, reporter, algorithm, prefix, preserve, bundle
            )
        except (
            DocumentError,
            saffiles.ChecksumError,
            saffiles.ContentsError,
            saffiles.MissingFileError,
        ) as e:
            reporter.warning(f"{e}, skipping set.", 2)
            failure = True
        except RenameError as e:
            reporter.error(f"{e}.", 2)
            failure = True
        else:
            reporter.info("Done", 2)

    return failure


def deduplicate_set(
    contents_path,
    reporter,
    algorithm=saffiles.DEFAULT_CHECKSUM,
    prefix=DOCUMENT_PREFIX,
    preserve=False,
    bundle=saffiles.ORIGINAL_BUNDLE,
):
    """Deduplicate the documents of one contents file.

    Documents are first renamed to their checksums, which collapses identical
    files onto one name. The survivors are then renamed to their final names
    and the contents file is rewritten to list them. Returns the final names.
    """
    set_path = os.path.dirname(contents_path)
    if not os.access(set_path, os.W_OK):
        raise DocumentError(f"the directory path '{set_path}' is not writable")

    entries = saffiles.read_contents(contents_path)
    documents = saffiles.bundle_documents(entries, bundle)
    other_entries = [entry for entry in entries if entry.bundle != bundle]
    if not documents:
        raise saffiles.ContentsError(f"no documents described in '{contents_path}'")

    # survivors keeps the first document seen for each checksum, in order.
    survivors = {}
    document_checksums = {}
    for document in documents:
        if document.filename in document_checksums:
            reporter.record(f"Document '{document.filename}' is listed twice.")
            continue

        document_path = os.path.join(set_path, document.filename)
        if not os.path.isfile(document_path) or not os.access(
            document_path, os.R_OK
        ):
            raise DocumentError(
                f"document '{document_path}' not found or not readable"
            )
        if not os.access(document_path, os.W_OK):
            raise DocumentError(f"document '{document_path}' not writable")

        reporter.info(f"Generating checksum for '{document_path}'.", 2)
        checksum = saffiles.compute_checksum(document_path, algorithm)
        document_checksums[document.filename] = checksum

        if checksum in survivors:
            reporter.info(f"Checksum: (duplicate) '{checksum}'.", 4)
            reporter.record(
                f"Duplicate checksum found '{checksum}', document '{document_path}'."
            )
        else:
            reporter.info(f"Checksum: (new)       '{checksum}'.", 4)
            reporter.record(
                f"New checksum found '{checksum}', document '{document_path}'."
            )
            survivors[checksum] = document

    checksum_names = {}
    for filename, checksum in document_checksums.items():
        extension = os.path.splitext(survivors[checksum].filename)[1]
        checksum_names[filename] = f"{checksum}{extension}"

    rename_documents_to_checksum(set_path, checksum_names, reporter)
    final_entries = rename_checksums_to_documents(
        set_path, survivors, reporter, prefix, preserve
    )
    rebuild_contents_file(
        contents_path, final_entries, other_entries, reporter, bundle
    )
    return [name for name, _ in final_entries]


def rename_documents_to_checksum(set_path, checksum_names, reporter):
    failed = False
    for filename, checksum_name in checksum_names.items():
        old_path = os.path.join(set_path, filename)
        new_path = os.path.join(set_path, checksum_name)
        try:
            os.replace(old_path, new_path)
        except OSError as e:
            reporter.warning(
                f"Something went wrong while moving '{old_path}' to '{new_path}', {e}.",
                6,
            )
            failed = True
            break
        reporter.record(f"Renamed '{old_path}' to '{new_path}'.")

    checksum_targets = set(checksum_names.values())
    not_renamed = [
        filename
        for filename in checksum_names
        if filename not in checksum_targets
        and os.path.exists(os.path.join(set_path, filename))
    ]
    if not failed and not not_renamed:
        return

    for filename in not_renamed:
        reporter.warning(
            f"Filename '{os.path.join(set_path, filename)}' not renamed, "
            "resetting changes to entire set.",
            4,
        )
    restore_documents(set_path, checksum_names, reporter)
    raise RenameError(
        f"unable to rename the documents in '{set_path}' to their checksums"
    )


def restore_documents(set_path, checksum_names, reporter):
    """Copy checksum named files back to the original document names.

    The checksum copies are only deleted when every restore worked, so no
    document content is ever lost. Returns True on a complete restore.
    """
    restored = []
    revert_failure = False
    for filename, checksum_name in checksum_names.items():
        original_path = os.path.join(set_path, filename)
        checksum_path = os.path.join(set_path, checksum_name)
        if not os.path.isfile(checksum_path) or os.path.exists(original_path):
            continue
        try:
            shutil.copy2(checksum_path, original_path)
        except OSError as e:
            reporter.record(
                f"Failed to restore '{original_path}' from '{checksum_path}', {e}."
            )
            revert_failure = True
            continue
        restored.append(checksum_path)
        reporter.record(f"Restored '{original_path}' from '{checksum_path}'.")

    if revert_failure:
        return False

    original_paths = {
        os.path.join(set_path, filename) for filename in checksum_names
    }
    for checksum_path in sorted(set(restored) - original_paths):
        try:
            os.remove(checksum_path)
        except OSError as e:
            reporter.warning(
                f"Something went wrong while deleting '{checksum_path}', {e}.", 6
            )
            continue
        reporter.record(f"Deleted '{checksum_path}'.")
    return True


def rename_checksums_to_documents(set_path, survivors, reporter, prefix, preserve):
    final_entries = []
    for order, (checksum, survivor) in enumerate(survivors.items(), start=1):
        extension = os.path.splitext(survivor.filename)[1]
        checksum_path = os.path.join(set_path, f"{checksum}{extension}")
        if preserve:
            desired_name = survivor.filename
        else:
            desired_name = f"{prefix}{order}{extension}"
        desired_path = os.path.join(set_path, desired_name)

        if desired_path != checksum_path and os.path.exists(desired_path):
            raise RenameError(
                f"moving '{checksum_path}' would overwrite '{desired_path}'"
            )
        try:
            os.replace(checksum_path, desired_path)
        except OSError as e:
            reporter.warning(
                f"Something went wrong while moving '{checksum_path}' to "
                f"'{desired_path}', {e}.",
                6,
            )
            raise RenameError(
                f"attempted but failed to move '{checksum_path}' to '{desired_path}'"
            )
        reporter.record(f"Renamed '{checksum_path}' to '{desired_path}'.")
        final_entries.append((desired_name, survivor))
    return final_entries


def rebuild_contents_file(
    contents_path, final_entries, other_entries, reporter, bundle
):
    lines = [
        saffiles.format_contents_line(name, bundle, survivor.options)
        for name, survivor in final_entries
    ]
    # Entries of other bundles (licenses, thumbnails) stay as they were.
    lines.extend(entry.line for entry in other_entries)

    saffiles.write_contents(contents_path, lines)
    for line in lines:
        reporter.record(f"Appended '{line}' to '{contents_path}'.")


def remove_problems(
    source_directory,
    problems_directory,
    reporter,
    kinds=saffiles.PROBLEM_KINDS,
    update_contents=False,
    contents_file=saffiles.CONTENTS_FILENAME,
):
    """Delete the files named in problem record files from their items.

    The stem of each record file, such as "2" in "2.duplicates", is the item
    directory inside source_directory. Returns True on any failure.
    """
    reporter.title(f"Analyzing Problems Directory: {problems_directory}")

    problem_files = saffiles.find_problem_files(problems_directory, kinds)
    if not problem_files:
        extensions = ", ".join(f'".{kind}"' for kind in kinds)
        reporter.warning(
            f"No files ending in {extensions} found in Problems Directory: "
            f"'{problems_directory}'.",
            2,
        )
        return False

    failure = False
    for item_name, kind, problem_path in reporter.track(problem_files, "Removing"):
        label = PROBLEM_LABELS[kind]
        item_path = os.path.join(source_directory, item_name)
        reporter.title(
            f"Processing {label.capitalize()} File: {os.path.basename(problem_path)}"
        )

        if not os.path.isdir(item_path):
            reporter.error(f"Directory not found: '{item_path}'.", 2)
            failure = True
            continue

        try:
            records = saffiles.read_problem_records(problem_path)
        except (OSError, UnicodeDecodeError) as e:
            reporter.error(f"Unable to read '{problem_path}', {e}.", 2)
            failure = True
            continue

        if not records:
            reporter.warning(f"Empty {kind} file: '{problem_path}'.", 2)
            continue

        filenames = [filename for filename, _ in records]
        if kind != saffiles.MISSING:
            for filename in filenames:
                if not remove_problem_file(item_path, filename, label, reporter):
                    failure = True

        if update_contents:
            contents_path = os.path.join(item_path, contents_file)
            try:
                removed = saffiles.remove_contents_entries(
                    contents_path, set(filenames)
                )
            except saffiles.MissingFileError:
                reporter.warning(f"Missing Contents File: '{contents_path}'.", 2)
                continue
            except saffiles.ContentsError as e:
                reporter.error(f"{e}.", 2)
                failure = True
                continue
            reporter.info(
                f"Removed {removed} line(s) from '{contents_path}'.", 2
            )

    return failure


def remove_problem_file(item_path, filename, label, reporter):
    """Delete one flagged file. Returns False if the delete failed."""
    file_path = os.path.join(item_path, filename)
    if not os.path.isfile(file_path):
        reporter.warning(
            f"{label.capitalize()} file not found: '{file_path}'.", 2
        )
        return True

    try:
        os.remove(file_path)
    except OSError as e:
        reporter.error(f"Failed to delete {label} file: '{file_path}', {e}.", 2)
        return False

    reporter.info(f"Deleted {label} file: '{file_path}'", 2)
    return True


def next_open_batch(destination, prefix, batch_number, batch_size):
    """Return the number and item count of the next batch with free slots."""
    while True:
        batch_number += 1
        batch_path = os.path.join(destination, f"{prefix}{batch_number}")
        if not os.path.isdir(batch_path):
            return batch_number, 0
        count = len(saffiles.list_item_directories(batch_path))
        if count < batch_size:
            return batch_number, count


def divide_into_batches(
    source_directory,
    batch_size,
    reporter,
    destination=None,
    prefix=BATCH_PREFIX,
):
    """Move item directories into batch directories of batch_size items."""
    if batch_size < 1:
        raise ValueError("batch size must be at least 1")
    if destination is None:
        destination = source_directory

    batch_pattern = re.compile(rf"{re.escape(prefix)}[0-9]+")
    destination_path = os.path.abspath(destination)
    items = []
    for name in saffiles.list_item_directories(source_directory):
        if batch_pattern.fullmatch(name):
            continue
        if os.path.abspath(os.path.join(source_directory, name)) == destination_path:
            continue
        items.append(name)

    if not items:
        reporter.warning(f"No item directories found in '{source_directory}'.", 2)
        return False

    failure = False
    batch_number = 0
    batch_path = None
    batch_count = batch_size
    for item_name in reporter.track(items, "Batching"):
        if batch_count >= batch_size:
            batch_number, batch_count = next_open_batch(
                destination, prefix, batch_number, batch_size
            )
            batch_path = os.path.join(destination, f"{prefix}{batch_number}")
            reporter.title(f"Batch {batch_number}: {batch_path}")
            try:
                os.makedirs(batch_path, mode=0o775, exist_ok=True)
            except OSError as e:
                reporter.error(
                    f"Unable to create batch directory '{batch_path}', {e}.", 2
                )
                batch_path = None

        # Failed items take a slot too.
        batch_count += 1
        if batch_path is None:
            reporter.error(f"Operation failed for item directory '{item_name}'.", 2)
            failure = True
            continue

        target_path = os.path.join(batch_path, item_name)
        if os.path.exists(target_path):
            reporter.error(f"'{target_path}' already exists.", 2)
            failure = True
            continue

        try:
            shutil.move(os.path.join(source_directory, item_name), target_path)
        except (OSError, shutil.Error) as e:
            reporter.error(
                f"Operation failed for item directory '{item_name}', {e}.", 2
            )
            failure = True
            continue
        reporter.info(f"Moved '{item_name}' to '{target_path}'.", 2)

    return failure


def add_dc_values(
    source_directory, element, value, reporter, qualifier="none", language="en"
):
    """Add one dcvalue to the dublin_core.xml of every item directory."""
    reporter.title(f"Adding {element}.{qualifier} To: {source_directory}")

    failure = False
    directories = saffiles.list_item_directories(source_directory)
    for directory_name in reporter.track(directories, "Updating"):
        dublin_core_path = os.path.join(
            source_directory, directory_name, saffiles.DUBLIN_CORE_FILENAME
        )
        if not os.path.isfile(dublin_core_path):
            reporter.warning(
                f"Missing {saffiles.DUBLIN_CORE_FILENAME} in '{directory_name}'.", 2
            )
            continue

        try:
            saffiles.add_dc_value(
                dublin_core_path, element, value, qualifier, language
            )
        except (saffiles.MetadataError, OSError) as e:
            reporter.error(f"{e}.", 2)
            failure = True
            continue
        reporter.info(f"Added '{value}' to '{dublin_core_path}'.", 2)

    return failure


def clean_pdf(pdf_path, new_name, destination, reporter):
    """Delete a bad PDF and move its item directory out of the way.

    Nothing happens to a valid PDF. Returns the new item directory path, or
    None when the PDF was valid.
    """
    try:
        mime_type = saffiles.validate_pdf(pdf_path)
    except saffiles.InvalidPDFError as e:
        reporter.warning(f"{e}.")
    else:
        reporter.info(f"Mime of '{pdf_path}' = {mime_type}")
        return None

    item_path = os.path.dirname(os.path.abspath(pdf_path))
    target_path = os.path.join(
        destination, f"{new_name}-{os.path.basename(item_path)}"
    )
    if os.path.exists(target_path):
        raise FileExistsError(f"'{target_path}' already exists")

    os.remove(pdf_path)
    reporter.info(f"Deleted '{pdf_path}'.")
    shutil.move(item_path, target_path)
    reporter.info(f"Moved '{item_path}' to '{target_path}'.")
    return target_path


def output_options(function):
    """Options shared by every batch command for logging and console output."""
    function = click.option(
        "-w",
        "--write-directory",
        type=click.Path(exists=True, file_okay=False, writable=True),
        default=".",
        show_default=True,
        help="Write the log (and problem records) within this directory.",
    )(function)
    function = click.option(
        "-l", "--log-file", default=None, help="Use a custom log file name."
    )(function)
    function = click.option(
        "-n",
        "--no-color",
        is_flag=True,
        help="Do not apply color changes when printing output to screen.",
    )(function)
    function = click.option(
        "-P",
        "--progress",
        is_flag=True,
        help="Display progress instead of normal output.",
    )(function)
    function = click.option(
        "-s", "--silent", is_flag=True, help="Do not print to the screen."
    )(function)
    return function


def start_job(write_directory, log_file, silent, progress, no_color, log_prefix):
    log_path = setup_logging(
        write_directory, log_file or default_log_file(log_prefix)
    )
    reporter = Reporter(
        logger, silent=silent, progress=progress, color=not no_color
    )
    reporter.info(
        f"Started On: {datetime.now().astimezone().strftime('%Y/%m/%d %I:%M:%S %p %z')}"
    )
    reporter.record(f"Logging to '{log_path}'")
    return reporter


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file of option defaults, keyed by command name.",
)
@click.pass_context
def cli(ctx, config_file):
    """Check and repair DSpace Simple Archive Format (SAF) directories."""
    if config_file:
        config = load_config(config_file)
        if config is None:
            ctx.exit(1)
        ctx.default_map = config


@cli.command("find-problems")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True),
)
@click.option(
    "-c",
    "--checksum",
    type=click.Choice(CHECKSUM_ALGORITHMS),
    default=saffiles.DEFAULT_CHECKSUM,
    show_default=True,
    help="Checksum algorithm used to detect duplicate PDFs.",
)
@click.option(
    "--checksum-directory",
    default=CHECKSUM_SUBDIR,
    show_default=True,
    help="Directory, within the write directory, for the problem records.",
)
@click.option("--contents-file", default=saffiles.CONTENTS_FILENAME, show_default=True)
@click.option("--bundle", default=saffiles.ORIGINAL_BUNDLE, show_default=True)
@output_options
@click.pass_context
def find_problems_command(
    ctx,
    source_directory,
    checksum,
    checksum_directory,
    contents_file,
    bundle,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Find missing, invalid, and duplicate PDFs.

    Every top-level sub-directory of SOURCE_DIRECTORY must have a contents
    file. Only the PDFs it lists are validated.
    """
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, ANALYSIS_LOG_PREFIX
    )
    problems_path = os.path.join(write_directory, checksum_directory)
    failure = find_problematic_pdfs(
        source_directory, problems_path, reporter, checksum, contents_file, bundle
    )
    if failure:
        ctx.exit(1)


@cli.command("rename")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True, writable=True),
)
@click.argument("mapping_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-V",
    "--validate",
    is_flag=True,
    help="Do not perform renaming, only validate the mapping file.",
)
@click.option(
    "--no-verify",
    is_flag=True,
    help="Do not cross check rows against the DOI or title in dublin_core.xml.",
)
@output_options
@click.pass_context
def rename_command(
    ctx,
    source_directory,
    mapping_file,
    validate,
    no_verify,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Rename row numbered directories to the Serial IDs of MAPPING_FILE.

    MAPPING_FILE is a UTF-8 CSV with a header row and the columns "Serial ID",
    "DOI", and "Title". Directory "5" is mapped using row 5 of the file.
    """
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, ANALYSIS_LOG_PREFIX
    )
    try:
        mapping = safmapping.load_mapping(mapping_file)
        failure = rename_directories(
            source_directory,
            mapping,
            reporter,
            verify=not no_verify,
            validate_only=validate,
        )
    except safmapping.MappingError as e:
        reporter.log.error(str(e))
        raise click.ClickException(str(e))
    if failure:
        ctx.exit(1)


@cli.command("deduplicate")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True),
)
@click.option(
    "-c",
    "--checksum",
    type=click.Choice(CHECKSUM_ALGORITHMS),
    default=saffiles.DEFAULT_CHECKSUM,
    show_default=True,
)
@click.option(
    "-p",
    "--preserve",
    is_flag=True,
    help="Preserve the original file names instead of renaming.",
)
@click.option(
    "-r",
    "--rename-to",
    default=DOCUMENT_PREFIX,
    show_default=True,
    help="File name prefix for renamed documents, ignored with --preserve.",
)
@click.option("--contents-file", default=saffiles.CONTENTS_FILENAME, show_default=True)
@click.option("--bundle", default=saffiles.ORIGINAL_BUNDLE, show_default=True)
@output_options
@click.pass_context
def deduplicate_command(
    ctx,
    source_directory,
    checksum,
    preserve,
    rename_to,
    contents_file,
    bundle,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Remove duplicate documents and rename the rest.

    Every contents file found within SOURCE_DIRECTORY is rewritten to match.
    """
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, CHANGES_LOG_PREFIX
    )
    failure = deduplicate_contents(
        source_directory,
        reporter,
        algorithm=checksum,
        prefix=rename_to,
        preserve=preserve,
        contents_file=contents_file,
        bundle=bundle,
    )
    if failure:
        ctx.exit(1)


@cli.command("remove-problems")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True, writable=True),
)
@click.argument(
    "problems_directory",
    type=click.Path(exists=True, file_okay=False, readable=True),
)
@click.option(
    "-k",
    "--kind",
    "kinds",
    type=click.Choice(saffiles.PROBLEM_KINDS),
    multiple=True,
    help="Only consume these problem records (default: all).",
)
@click.option(
    "-u",
    "--update-contents",
    is_flag=True,
    help="Also remove the flagged files from the contents file.",
)
@click.option("--contents-file", default=saffiles.CONTENTS_FILENAME, show_default=True)
@output_options
@click.pass_context
def remove_problems_command(
    ctx,
    source_directory,
    problems_directory,
    kinds,
    update_contents,
    contents_file,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Remove the PDFs flagged by find-problems.

    PROBLEMS_DIRECTORY holds the ".duplicates", ".invalid", and ".missing"
    files written by find-problems.
    """
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, CHANGES_LOG_PREFIX
    )
    failure = remove_problems(
        source_directory,
        problems_directory,
        reporter,
        kinds=tuple(kinds) or saffiles.PROBLEM_KINDS,
        update_contents=update_contents,
        contents_file=contents_file,
    )
    if failure:
        ctx.exit(1)


@cli.command("divide-batches")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True, writable=True),
)
@click.argument("batch_size", type=click.IntRange(min=1))
@click.option(
    "--destination",
    type=click.Path(exists=True, file_okay=False, writable=True),
    default=None,
    help="Create the batch directories here instead of SOURCE_DIRECTORY.",
)
@click.option("--prefix", default=BATCH_PREFIX, show_default=True)
@output_options
@click.pass_context
def divide_batches_command(
    ctx,
    source_directory,
    batch_size,
    destination,
    prefix,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Move item directories into batches of BATCH_SIZE items."""
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, CHANGES_LOG_PREFIX
    )
    failure = divide_into_batches(
        source_directory, batch_size, reporter, destination, prefix
    )
    if failure:
        ctx.exit(1)


@cli.command("add-value")
@click.argument(
    "source_directory",
    type=click.Path(exists=True, file_okay=False, readable=True),
)
@click.option("-e", "--element", required=True, help="The dcvalue element.")
@click.option(
    "-q", "--qualifier", default="none", show_default=True, help="The dcvalue qualifier."
)
@click.option("-v", "--value", required=True, help="The value to add.")
@click.option("--language", default="en", show_default=True)
@output_options
@click.pass_context
def add_value_command(
    ctx,
    source_directory,
    element,
    qualifier,
    value,
    language,
    write_directory,
    log_file,
    no_color,
    progress,
    silent,
):
    """Add a metadata value to every item's dublin_core.xml."""
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, CHANGES_LOG_PREFIX
    )
    failure = add_dc_values(
        source_directory, element, value, reporter, qualifier, language
    )
    if failure:
        ctx.exit(1)


@cli.command("test-pdf")
@click.argument(
    "files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.pass_context
def test_pdf_command(ctx, files):
    """Exit with 0 only if every one of FILES really is a PDF."""
    failure = False
    for file_path in files:
        try:
            mime_type = saffiles.detect_mime_type(file_path)
        except magic.MagicException as e:
            click.secho(
                f"ERROR: Unable to detect the mime type of '{file_path}', {e}.",
                fg="red",
                err=True,
            )
            failure = True
            continue
        click.echo(f"Mime of '{file_path}' = {mime_type}")
        if mime_type != saffiles.PDF_MIME_TYPE:
            failure = True
    if failure:
        ctx.exit(1)


@cli.command("clean-pdf")
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False))
@click.argument("new_name")
@click.argument(
    "destination", type=click.Path(exists=True, file_okay=False, writable=True)
)
@output_options
def clean_pdf_command(
    pdf, new_name, destination, write_directory, log_file, no_color, progress, silent
):
    """Delete PDF if it is not a PDF and move its item directory.

    The item directory is moved to DESTINATION as "<NEW_NAME>-<directory>".
    """
    reporter = start_job(
        write_directory, log_file, silent, progress, no_color, CHANGES_LOG_PREFIX
    )
    try:
        clean_pdf(pdf, new_name, destination, reporter)
    except (saffiles.MissingFileError, OSError, shutil.Error) as e:
        reporter.log.error(str(e))
        raise click.ClickException(str(e))


if __name__ == "__main__":
    cli()
