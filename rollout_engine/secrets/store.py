#rollout_engine\secrets\store.py

"""Secret store adapter - per-service env files in an owner-only directory."""

import io
import logging
import os
import stat
from pathlib import Path
from typing import Dict, Union

from dotenv import dotenv_values
from dotenv.parser import parse_stream

from rollout_engine.core.errors import InsecureStorage, PermissionDenied, SecretsUnavailable
from rollout_engine.core.models import SecretBundle

logger = logging.getLogger(__name__)

# any permission bit for group or others
INSECURE_BITS = stat.S_IRWXG | stat.S_IRWXO


def parse_env_text(text: str) -> Dict[str, str]:
    """
    Parse a ``.env`` file body with python-dotenv.

    Comments, ``export`` prefixes, quoting and escapes follow dotenv rules;
    ``$VAR`` references are kept literally. A line without ``KEY=value``
    is an error.
    """
    for binding in parse_stream(io.StringIO(text)):
        if binding.error or (binding.key is not None and binding.value is None):
            # only the line number: the line itself may hold a secret
            raw = binding.original.string
            lineno = binding.original.line + raw[:len(raw) - len(raw.lstrip())].count("\n")
            raise SecretsUnavailable(f"malformed secret line {lineno}")

    return dict(dotenv_values(stream=io.StringIO(text), interpolate=False))


class SecretStore:
    """
    Loads SecretBundles from ``<directory>/<service>.env``.

    Fail-closed: if the directory or the file grants any permission to
    group or others, loading stops with InsecureStorage before the file is
    read. Bundles are not cached; every call reads the file again.
    """

    def __init__(self, directory: Union[str, Path], suffix: str = ".env"):
        self.directory = Path(directory)
        self.suffix = suffix

    def path_for(self, service_name: str) -> Path:
        return self.directory / f"{service_name}{self.suffix}"

    def load(self, service_name: str) -> SecretBundle:
        """
        Raises:
            SecretsUnavailable: directory or file missing
            PermissionDenied: storage not readable by this process
            InsecureStorage: storage readable by group/world
        """
        self._check_mode(self.directory, kind="directory")

        path = self.path_for(service_name)
        self._check_mode(path, kind="file")

        try:
            text = path.read_text(encoding="utf-8")
        except PermissionError as e:
            raise PermissionDenied(f"Cannot read secrets for {service_name}: {path}") from e
        except FileNotFoundError as e:
            raise SecretsUnavailable(f"Secrets file disappeared: {path}") from e

        try:
            values = parse_env_text(text)
        except SecretsUnavailable as e:
            raise SecretsUnavailable(f"{path}: {e}") from e

        logger.info(f"[secrets] loaded {len(values)} key(s) for {service_name}")
        return SecretBundle(service_name, values)

    def _check_mode(self, path: Path, kind: str) -> None:
        try:
            st = os.stat(path)
        except FileNotFoundError as e:
            raise SecretsUnavailable(f"Secrets {kind} not found: {path}") from e
        except PermissionError as e:
            raise PermissionDenied(f"Cannot access secrets {kind}: {path}") from e

        if kind == "directory" and not stat.S_ISDIR(st.st_mode):
            raise SecretsUnavailable(f"Secrets path is not a directory: {path}")

        mode = stat.S_IMODE(st.st_mode)
        if mode & INSECURE_BITS:
            logger.error(f"[secrets] ❌ refusing insecure {kind} {path} (mode {mode:o})")
            raise InsecureStorage(
                f"Secrets {kind} {path} has mode {mode:o}; expected owner-only access"
            )
