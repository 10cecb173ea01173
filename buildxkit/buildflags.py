"""Parsers for build command-line flags: cache, outputs, secrets, SSH, entitlements."""

from __future__ import annotations

import csv
import enum
import io
import json
import os
import stat
import sys
from dataclasses import dataclass, field
from typing import IO

EXPORTER_IMAGE = "image"
EXPORTER_LOCAL = "local"
EXPORTER_TAR = "tar"
EXPORTER_OCI = "oci"
EXPORTER_DOCKER = "docker"


@dataclass
class CacheOptionsEntry:
    """A cache import or export entry."""

    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ExportEntry:
    """An output (exporter) entry with its client-side destination."""

    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)
    output_dir: str = ""
    output: IO[bytes] | None = None


class Entitlement(str, enum.Enum):
    """Extra privileges a build may request."""

    SECURITY_INSECURE = "security.insecure"
    NETWORK_HOST = "network.host"


@dataclass
class SecretSource:
    """Where a build secret is read from."""

    id: str = ""
    file_path: str = ""
    env: str = ""


@dataclass
class SSHAgentConfig:
    """An SSH agent socket or key set exposed to a build."""

    id: str = ""
    paths: list[str] = field(default_factory=list)


def _quote(value: str) -> str:
    return json.dumps(value)


def _read_csv_record(value: str) -> list[str]:
    try:
        record = next(csv.reader(io.StringIO(value), strict=True), None)
    except csv.Error as exc:
        raise ValueError(str(exc)) from exc
    if not record:
        raise ValueError("empty value")
    return record


def parse_cache_entry(entries: list[str]) -> list[CacheOptionsEntry]:
    """Parse ``--cache-from``/``--cache-to`` values."""
    result: list[CacheOptionsEntry] = []
    for entry in entries:
        fields = _read_csv_record(entry)
        if all("=" not in f for f in fields):
            result.extend(CacheOptionsEntry(type="registry", attrs={"ref": f}) for f in fields)
            continue
        option = CacheOptionsEntry()
        for f in fields:
            key, sep, value = f.partition("=")
            if not sep:
                raise ValueError(f"invalid value {f}")
            key = key.lower()
            if key == "type":
                option.type = value
            else:
                option.attrs[key] = value
        if not option.type:
            raise ValueError(f"type required form> {_quote(entry)}")
        if _add_github_token(option):
            result.append(option)
    return result


def _add_github_token(option: CacheOptionsEntry) -> bool:
    if option.type != "gha":
        return True
    if "token" not in option.attrs and "ACTIONS_RUNTIME_TOKEN" in os.environ:
        option.attrs["token"] = os.environ["ACTIONS_RUNTIME_TOKEN"]
    if "url" not in option.attrs and "ACTIONS_CACHE_URL" in os.environ:
        option.attrs["url"] = os.environ["ACTIONS_CACHE_URL"]
    return bool(option.attrs.get("token")) and bool(option.attrs.get("url"))


def parse_entitlements(values: list[str]) -> list[Entitlement]:
    """Parse ``--allow`` values."""
    result = []
    for value in values:
        try:
            result.append(Entitlement(value))
        except ValueError:
            raise ValueError(f"invalid entitlement: {value}") from None
    return result


def parse_outputs(values: list[str]) -> list[ExportEntry]:
    """Parse ``--output`` values, opening destination files where needed."""
    outputs: list[ExportEntry] = []
    for value in values:
        fields = _read_csv_record(value)
        entry = ExportEntry()
        if len(fields) == 1 and fields[0] == value and not value.startswith("type="):
            if value != "-":
                outputs.append(ExportEntry(type=EXPORTER_LOCAL, output_dir=value))
                continue
            entry = ExportEntry(type=EXPORTER_TAR, attrs={"dest": value})

        if not entry.type:
            for f in fields:
                key, sep, val = f.partition("=")
                if not sep:
                    raise ValueError(f"invalid value {f}")
                key = key.lower().strip()
                if key == "type":
                    entry.type = val
                else:
                    entry.attrs[key] = val
        if not entry.type:
            raise ValueError("type is required for output")

        _resolve_destination(entry)
        outputs.append(entry)
    return outputs


def _resolve_destination(entry: ExportEntry) -> None:
    if entry.type == EXPORTER_LOCAL:
        if "dest" not in entry.attrs:
            raise ValueError("dest is required for local output")
        entry.output_dir = entry.attrs.pop("dest")
    elif entry.type in (EXPORTER_OCI, EXPORTER_DOCKER, EXPORTER_TAR):
        dest = entry.attrs.pop("dest", None)
        if dest is None:
            dest = "" if entry.type == EXPORTER_DOCKER else "-"
        if dest == "-":
            if sys.stdout.isatty():
                raise ValueError(
                    f"output file is required for {entry.type} exporter. "
                    "refusing to write to console"
                )
            entry.output = getattr(sys.stdout, "buffer", sys.stdout)
        elif dest:
            entry.output = _open_destination(dest)
    elif entry.type == "registry":
        entry.type = EXPORTER_IMAGE
        entry.attrs.setdefault("push", "true")


def _open_destination(dest: str) -> IO[bytes]:
    try:
        info = os.stat(dest)
    except FileNotFoundError:
        info = None
    except OSError as exc:
        raise ValueError(f"invalid destination file: {dest}: {exc}") from exc
    if info is not None and stat.S_ISDIR(info.st_mode):
        raise ValueError(f"destination file {dest} is a directory")
    try:
        return open(dest, "wb")
    except OSError as exc:
        raise ValueError(f"failed to open {exc}") from exc


def parse_secret(value: str) -> SecretSource:
    """Parse one ``--secret`` value."""
    try:
        fields = _read_csv_record(value)
    except ValueError as exc:
        raise ValueError(f"failed to parse csv secret: {exc}") from exc

    source = SecretSource()
    secret_type = ""
    for f in fields:
        key, sep, val = f.partition("=")
        key = key.lower()
        if not sep:
            raise ValueError(f"invalid field '{f}' must be a key=value pair")
        if key == "type":
            if val not in ("file", "env"):
                raise ValueError(f"unsupported secret type {_quote(val)}")
            secret_type = val
        elif key == "id":
            source.id = val
        elif key in ("source", "src"):
            source.file_path = val
        elif key == "env":
            source.env = val
        else:
            raise ValueError(f"unexpected key '{key}' in '{f}'")
    if secret_type == "env" and not source.env:
        source.env = source.file_path
        source.file_path = ""
    return source


def parse_secret_specs(values: list[str]) -> dict[str, SecretSource]:
    """Parse ``--secret`` values into sources keyed by secret id."""
    sources: dict[str, SecretSource] = {}
    for value in values:
        source = parse_secret(value)
        if not source.id:
            raise ValueError("secret missing ID")
        sources[source.id] = source
    return sources


def parse_ssh(value: str) -> SSHAgentConfig:
    """Parse one ``--ssh`` value of the form ``id[=path,...]``."""
    ident, sep, paths = value.partition("=")
    return SSHAgentConfig(id=ident, paths=paths.split(",") if sep else [])


def parse_ssh_specs(values: list[str]) -> list[SSHAgentConfig]:
    """Parse ``--ssh`` values."""
    return [parse_ssh(value) for value in values]