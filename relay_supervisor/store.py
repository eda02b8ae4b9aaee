"""
Durable state store.

Reads and writes the single JSON document of record. A missing, unreadable or
invalid document is replaced by the default document instead of aborting
startup. Writes go to a temporary file that is fsynced and renamed over the
document, so a crash mid-write leaves the previous copy intact.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path

from .document import StateDocument, decode_document
from .errors import DocumentDecodeError, StoreIOError

logger = logging.getLogger(__name__)


class StateStore:
    """Single-writer store for the state document."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> StateDocument:
        """Load the document, falling back to (and persisting) the default."""
        try:
            raw = self.path.read_bytes()
            document = decode_document(raw)
            logger.debug(f"State document {self.path} is valid")
            return document
        except FileNotFoundError:
            logger.info(f"No state document at {self.path}, writing defaults")
        except DocumentDecodeError as e:
            logger.error(f"State document {self.path} is invalid, resetting to defaults: {e}")
        except OSError as e:
            logger.error(f"Error reading state document {self.path}, resetting to defaults: {e}")

        document = StateDocument.default()
        try:
            self.save(document)
        except StoreIOError as e:
            logger.error(f"Could not write default state document: {e}")
        return document

    def save(self, document: StateDocument) -> None:
        """Atomically replace the document on disk."""
        content = document.to_json().encode("utf-8")

        with self._lock:
            tmp_path = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as e:
                raise StoreIOError(f"Failed to write {self.path}: {e}") from e
            finally:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
