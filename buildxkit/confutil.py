"""Locating the builder configuration store and loading BuildKit daemon config."""

from __future__ import annotations

import logging
import os
import posixpath
from collections.abc import Mapping

import tomlkit
from tomlkit.exceptions import TOMLKitError

# Where buildkitd inside a (Linux) builder container keeps its state and config.
DEFAULT_BUILDKIT_STATE_DIR = "/var/lib/buildkit"
DEFAULT_BUILDKIT_CONFIG_DIR = "/etc/buildkit"

_MAX_FILE_SIZE = 1024 * 1024

_log = logging.getLogger(__name__)


def config_dir(docker_config_file: str) -> str:
    """Return the store directory: ``$BUILDX_CONFIG`` or ``buildx`` beside the Docker config."""
    env_dir = os.environ.get("BUILDX_CONFIG")
    if env_dir:
        _log.debug('using config store "%s" based in "$BUILDX_CONFIG" environment variable', env_dir)
        return env_dir
    path = os.path.join(os.path.dirname(docker_config_file), "buildx")
    _log.debug('using default config store "%s"', path)
    return path


def default_config_file(docker_config_file: str) -> str | None:
    """Return the default BuildKit config file path if it exists, else None."""
    path = os.path.join(config_dir(docker_config_file), "buildkitd.default.toml")
    return path if os.path.exists(path) else None


def _load_config_tree(path: str) -> tomlkit.TOMLDocument | None:
    try:
        with open(path, encoding="utf-8") as handle:
            text = handle.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"failed to load config from {path}: {exc}") from exc
    try:
        return tomlkit.parse(text)
    except TOMLKitError as exc:
        raise ValueError(f"failed to parse config: {exc}") from exc


def _read_file(path: str, kind: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            return handle.read(_MAX_FILE_SIZE)
    except OSError as exc:
        raise OSError(f"failed to read {kind} file: {path}: {exc}") from exc


def load_config_files(path: str) -> dict[str, bytes]:
    """Load a BuildKit config and the registry certificates it references.

    Certificate paths in the returned ``buildkitd.toml`` are rewritten to
    where the files will live inside the builder container; the returned
    mapping is keyed by paths relative to the container config directory.
    """
    try:
        os.stat(path)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"buildkit configuration file not found: {path}") from exc
    except OSError as exc:
        raise OSError(f"invalid buildkit configuration file: {path}: {exc}") from exc

    doc = _load_config_tree(path)
    if doc is None:
        doc = tomlkit.document()

    files: dict[str, bytes] = {}

    registry = doc.get("registry")
    if isinstance(registry, Mapping):
        for reg_name, reg_conf in registry.items():
            if not isinstance(reg_conf, Mapping):
                continue
            prefix = posixpath.join("certs", reg_name)

            cas = reg_conf.get("ca")
            if isinstance(cas, str):
                cas = [cas]
            if cas:
                container_paths = []
                for ca in cas:
                    ca = str(ca)
                    rel = posixpath.join(prefix, posixpath.basename(ca))
                    container_paths.append(posixpath.join(DEFAULT_BUILDKIT_CONFIG_DIR, rel))
                    files[rel] = _read_file(ca, "CA")
                reg_conf["ca"] = container_paths

            for keypair in reg_conf.get("keypair") or []:
                if not isinstance(keypair, Mapping):
                    continue
                for field_name in ("key", "cert"):
                    value = str(keypair.get(field_name, ""))
                    if not value:
                        continue
                    rel = posixpath.join(prefix, posixpath.basename(value))
                    keypair[field_name] = posixpath.join(DEFAULT_BUILDKIT_CONFIG_DIR, rel)
                    files[rel] = _read_file(value, field_name)

    files["buildkitd.toml"] = tomlkit.dumps(doc).encode("utf-8")
    return files