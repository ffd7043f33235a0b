from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Any

from . import document as d
from .document import ConfigDocument
from .errors import InvalidDocument
from .settings import Settings

log = logging.getLogger(__name__)


class ConfigStore:
    """Owns the routing document on disk.

    Every write goes through validate-then-swap: the candidate is validated
    first, written to a temp file in the same directory, fsynced and renamed
    over the old one. Readers never see a partial file.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.path = settings.config_path
        self._current: ConfigDocument | None = None

    @property
    def current(self) -> ConfigDocument:
        if self._current is None:
            self._current = self.load()
        return self._current

    def load(self) -> ConfigDocument:
        """Read and validate the persisted document. Raises InvalidDocument."""
        try:
            with open(self.path, "rb") as f:
                raw = f.read()
        except FileNotFoundError as e:
            raise InvalidDocument(f"{self.path} does not exist") from e
        doc = d.parse(raw)
        d.validate(doc, self.settings)
        return doc

    def ensure_baseline(self) -> ConfigDocument:
        """Make sure a valid document exists, synthesizing the baseline if not.

        A file that fails validation is kept next to the original as
        ``<name>.invalid`` before being replaced.
        """
        try:
            self._current = self.load()
            return self._current
        except InvalidDocument as e:
            if os.path.exists(self.path):
                backup = f"{self.path}.invalid"
                shutil.copyfile(self.path, backup)
                log.warning("Existing document is invalid (%s); saved a copy to %s and starting from the baseline", e, backup)
            else:
                log.info("Creating initial Caddy JSON configuration at %s", self.path)
        return self.commit(d.baseline(self.settings))

    def commit(self, candidate: ConfigDocument | dict[str, Any] | str | bytes) -> ConfigDocument:
        """Validate *candidate* and atomically make it the committed document.

        Raises InvalidDocument and leaves the file untouched when validation
        fails.
        """
        if isinstance(candidate, ConfigDocument):
            # Re-parse the serialized form so we validate exactly what gets written.
            text = d.dumps(candidate)
        else:
            text = d.dumps(d.parse(candidate))
        doc = d.parse(text)
        d.validate(doc, self.settings)
        self._write_atomic(text)
        self._current = doc
        return doc

    def read_text(self) -> str:
        with open(self.path, encoding="utf-8") as f:
            return f.read()

    def _write_atomic(self, text: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
