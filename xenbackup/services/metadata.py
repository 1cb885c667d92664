"""
Metadata codec for backup records and the backup set registry document.

Documents are plain JSON. Decoding goes through the pydantic models so that
older documents (key/value arrays for maps, integer enum values) load into the
same shape as current ones.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from xenbackup.core.errors import MetadataError
from xenbackup.models.backup import BackupRecord, BackupSetDocument

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str):
    """
    Replace ``path`` with ``text`` so readers never see a partial document.

    Writes a temp file in the same directory, fsyncs it, then renames it over
    the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _parse_json(text: Union[str, bytes], source: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MetadataError(f"Invalid JSON in {source}: {e}") from e


def encode_record(record: BackupRecord) -> str:
    """Serialize a backup record (registry fields plus captured VM config)."""
    return json.dumps(record.model_dump(mode="json", exclude_none=True), indent=4)


def decode_record(text: Union[str, bytes], source: str = "metadata") -> BackupRecord:
    """Parse a backup record document."""
    data = _parse_json(text, source)
    try:
        return BackupRecord.model_validate(data)
    except ValidationError as e:
        raise MetadataError(f"Invalid backup metadata in {source}: {e}") from e


def encode_registry(document: BackupSetDocument) -> str:
    """Serialize the registry document, entries in insertion order."""
    return json.dumps(document.model_dump(mode="json", exclude_none=True), indent=4)


def decode_registry(text: Union[str, bytes], source: str = "registry") -> BackupSetDocument:
    """Parse the registry document. A document without ``sets`` is empty."""
    data = _parse_json(text, source)
    if not isinstance(data, dict):
        raise MetadataError(f"Invalid registry in {source}: expected a JSON object")
    try:
        return BackupSetDocument.model_validate(data)
    except ValidationError as e:
        raise MetadataError(f"Invalid registry in {source}: {e}") from e


def write_record(path: Path, record: BackupRecord):
    atomic_write_text(path, encode_record(record))
    logger.debug(f"Wrote metadata for {record.set_id} to {path}")


def read_record(path: Path) -> BackupRecord:
    """Load a backup record; a missing document is fatal."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise MetadataError(f"Metadata file not found: {path}") from e
    except OSError as e:
        raise MetadataError(f"Cannot read metadata file {path}: {e}") from e
    return decode_record(text, str(path))
