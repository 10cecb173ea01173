"""On-disk store of builder instances (node groups) and the current selection."""

from __future__ import annotations

import base64
import copy as _copy
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from filelock import FileLock

from buildxkit import confutil, platformutil
from buildxkit.platformutil import Platform

_NAME_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9.\-_]*")

_log = logging.getLogger(__name__)


def validate_name(name: str) -> str:
    """Check a builder or node name and return it lower-cased."""
    if not _NAME_RE.fullmatch(name):
        raise ValueError(
            f"invalid name {name}, name needs to start with a letter and may not "
            "contain symbols, except ._-"
        )
    return name.lower()


def _platform_to_json(platform: Platform) -> dict[str, Any]:
    data: dict[str, Any] = {"architecture": platform.architecture, "os": platform.os}
    if platform.os_version:
        data["os.version"] = platform.os_version
    if platform.os_features:
        data["os.features"] = list(platform.os_features)
    if platform.variant:
        data["variant"] = platform.variant
    return data


def _platform_from_json(data: dict[str, Any]) -> Platform:
    return Platform(
        os=data.get("os", ""),
        architecture=data.get("architecture", ""),
        variant=data.get("variant", ""),
        os_version=data.get("os.version", ""),
        os_features=tuple(data.get("os.features") or ()),
    )


@dataclass
class Node:
    """One builder node: an endpoint with its platforms and options."""

    name: str = ""
    endpoint: str = ""
    platforms: list[Platform] = field(default_factory=list)
    flags: list[str] | None = None
    driver_opts: dict[str, str] | None = None
    files: dict[str, bytes] | None = None

    def copy(self) -> Node:
        """Return an independent copy of the node."""
        return _copy.deepcopy(self)

    def _to_json(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "Endpoint": self.endpoint,
            "Platforms": [_platform_to_json(p) for p in self.platforms],
            "Flags": self.flags,
            "DriverOpts": self.driver_opts,
            "Files": None
            if self.files is None
            else {k: base64.b64encode(v).decode("ascii") for k, v in self.files.items()},
        }

    @classmethod
    def _from_json(cls, data: dict[str, Any]) -> Node:
        files = data.get("Files")
        return cls(
            name=data.get("Name", ""),
            endpoint=data.get("Endpoint", ""),
            platforms=[_platform_from_json(p) for p in data.get("Platforms") or []],
            flags=data.get("Flags"),
            driver_opts=data.get("DriverOpts"),
            files=None if files is None else {k: base64.b64decode(v) for k, v in files.items()},
        )


@dataclass
class NodeGroup:
    """A builder instance made of one or more nodes."""

    name: str = ""
    driver: str = ""
    nodes: list[Node] = field(default_factory=list)
    dynamic: bool = False

    def _find_node(self, name: str) -> int:
        return next((i for i, node in enumerate(self.nodes) if node.name == name), -1)

    def _next_node_name(self) -> str:
        index = 0
        while self._find_node(f"{self.name}{index}") != -1:
            index += 1
        return f"{self.name}{index}"

    def leave(self, name: str) -> None:
        """Remove the named node."""
        if self.dynamic:
            raise ValueError("dynamic node group does not support Leave")
        index = self._find_node(name)
        if index == -1:
            raise ValueError(f'node "{name}" not found for {self.name}')
        if len(self.nodes) == 1:
            raise ValueError("can not leave last node, do you want to rm instance instead?")
        del self.nodes[index]

    def update(
        self,
        name: str,
        endpoint: str,
        platforms: list[str] | None,
        endpoints_set: bool,
        action_append: bool,
        flags: list[str] | None,
        config_file: str,
        driver_opts: dict[str, str] | None,
    ) -> None:
        """Change an existing node or add a new one."""
        if self.dynamic:
            raise ValueError("dynamic node group does not support Update")
        index = self._find_node(name)
        if index == -1 and not action_append:
            if self.nodes:
                raise ValueError(f"node {name} not found, did you mean to append?")
            self.nodes = []

        parsed = platformutil.parse(platforms or [])

        files: dict[str, bytes] | None = None
        if config_file:
            files = confutil.load_config_files(config_file)

        if index != -1:
            node = self.nodes[index]
            needs_restart = False
            if endpoints_set:
                node.endpoint = endpoint
                needs_restart = True
            if platforms:
                node.platforms = parsed
            if flags is not None:
                node.flags = flags
                needs_restart = True
            if driver_opts is not None:
                node.driver_opts = driver_opts
                needs_restart = True
            if config_file:
                node.files = {**(node.files or {}), **(files or {})}
                needs_restart = True
            if needs_restart:
                _log.warning("new settings may not be used until builder is restarted")
            self._validate_duplicates(endpoint, index)
            return

        if not name:
            name = self._next_node_name()
        name = validate_name(name)

        self.nodes.append(
            Node(
                name=name,
                endpoint=endpoint,
                platforms=parsed,
                flags=flags,
                driver_opts=driver_opts,
                files=files,
            )
        )
        self._validate_duplicates(endpoint, len(self.nodes) - 1)

    def _validate_duplicates(self, endpoint: str, index: int) -> None:
        if sum(1 for node in self.nodes if node.endpoint == endpoint) > 1:
            raise ValueError(f"invalid duplicate endpoint {endpoint}")
        taken = {platformutil.format_platform(p) for p in self.nodes[index].platforms}
        for i, node in enumerate(self.nodes):
            if i == index:
                continue
            node.platforms = [
                p for p in node.platforms if platformutil.format_platform(p) not in taken
            ]

    def copy(self) -> NodeGroup:
        """Return an independent copy of the node group."""
        return NodeGroup(
            name=self.name,
            driver=self.driver,
            nodes=[node.copy() for node in self.nodes],
            dynamic=self.dynamic,
        )

    def _to_json(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "Driver": self.driver,
            "Nodes": [node._to_json() for node in self.nodes],
            "Dynamic": self.dynamic,
        }

    @classmethod
    def _from_json(cls, data: dict[str, Any]) -> NodeGroup:
        return cls(
            name=data.get("Name", ""),
            driver=data.get("Driver", ""),
            nodes=[Node._from_json(n) for n in data.get("Nodes") or []],
            dynamic=bool(data.get("Dynamic", False)),
        )


def _to_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:20]


def _atomic_write(path: str, data: bytes) -> None:
    directory, base = os.path.split(path)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".tmp-{base}")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path, ignore_errors=True)
    else:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


class Store:
    """Directory holding saved builder instances and selection state."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = os.fspath(root)
        os.makedirs(os.path.join(self.root, "instances"), mode=0o700, exist_ok=True)
        os.makedirs(os.path.join(self.root, "defaults"), mode=0o700, exist_ok=True)

    @contextmanager
    def txn(self) -> Iterator[Txn]:
        """Hold the store's file lock for the duration of the block."""
        with FileLock(os.path.join(self.root, ".lock")):
            yield Txn(self)


class Txn:
    """Operations on a locked store."""

    def __init__(self, store: Store) -> None:
        self._root = store.root

    def _instance_path(self, name: str) -> str:
        return os.path.join(self._root, "instances", name)

    def list(self) -> list[NodeGroup]:
        """Return all saved node groups sorted by name, dropping stale entries."""
        instances = os.path.join(self._root, "instances")
        groups: list[NodeGroup] = []
        for entry in sorted(os.listdir(instances)):
            try:
                groups.append(self.node_group_by_name(entry))
            except FileNotFoundError:
                _remove_all(os.path.join(instances, entry))
        groups.sort(key=lambda ng: ng.name)
        return groups

    def node_group_by_name(self, name: str) -> NodeGroup:
        """Load a node group; raise FileNotFoundError if it is not saved."""
        name = validate_name(name)
        with open(self._instance_path(name), "rb") as handle:
            data = json.loads(handle.read())
        return NodeGroup._from_json(data)

    def save(self, node_group: NodeGroup) -> None:
        """Write a node group to the store."""
        name = validate_name(node_group.name)
        data = json.dumps(node_group._to_json(), separators=(",", ":")).encode("utf-8")
        _atomic_write(self._instance_path(name), data)

    def remove(self, name: str) -> None:
        """Delete a saved node group, if present."""
        name = validate_name(name)
        _remove_all(self._instance_path(name))

    def set_current(self, key: str, name: str, is_global: bool, is_default: bool) -> None:
        """Select the node group used for an endpoint key."""
        self._write_current(key, name, is_global)
        default_path = os.path.join(self._root, "defaults", _to_hash(key))
        if is_default:
            _atomic_write(default_path, name.encode("utf-8"))
        else:
            _remove_all(default_path)

    def _write_current(self, key: str, name: str = "", is_global: bool = False) -> None:
        data = json.dumps({"Key": key, "Name": name, "Global": is_global}).encode("utf-8")
        _atomic_write(os.path.join(self._root, "current"), data)

    def _try_load(self, name: str) -> NodeGroup | None:
        try:
            return self.node_group_by_name(name)
        except (OSError, ValueError):
            return None

    def current(self, key: str) -> NodeGroup | None:
        """Return the node group selected for an endpoint key, or None."""
        try:
            with open(os.path.join(self._root, "current"), "rb") as handle:
                current = json.loads(handle.read())
        except FileNotFoundError:
            current = None

        if current is not None and current.get("Name"):
            if current.get("Global"):
                group = self._try_load(current["Name"])
                if group is not None:
                    return group
            if current.get("Key") == key:
                return self._try_load(current["Name"])

        try:
            with open(os.path.join(self._root, "defaults", _to_hash(key)), "rb") as handle:
                default_name = handle.read().decode("utf-8")
        except FileNotFoundError:
            self._write_current(key)
            return None

        group = self._try_load(default_name)
        if group is None:
            self._write_current(key)
        self.set_current(key, default_name, False, True)
        return group