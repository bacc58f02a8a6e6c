from __future__ import annotations

import logging
from typing import Callable, Optional

from .errors import ConfigurationError

logger = logging.getLogger("connectpipe.credentials")

# A credential source returns the raw bytes that go into the Basic token.
# The bytes are used verbatim: a "user:pass" pair must already be in the file.
CredentialSource = Callable[[], bytes]


def file_credentials(path: str) -> CredentialSource:
    def _load() -> bytes:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise ConfigurationError(f"cannot read auth file {path!r}: {e}") from e
        logger.debug("auth: loaded %d bytes from %s", len(data), path)
        return data

    return _load


def load_credential(source: Optional[CredentialSource]) -> Optional[bytes]:
    if source is None:
        return None
    return source()
