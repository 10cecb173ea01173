"""Parsing, normalising and formatting of OS/architecture platform specifiers."""

from __future__ import annotations

import platform as _host
import re
import sys
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

_SPECIFIER_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_KNOWN_OS = frozenset(
    {
        "aix", "android", "darwin", "dragonfly", "freebsd", "hurd", "illumos",
        "ios", "js", "linux", "nacl", "netbsd", "openbsd", "plan9", "solaris",
        "windows", "zos",
    }
)

_KNOWN_ARCH = frozenset(
    {
        "386", "amd64", "amd64p32", "arm", "armbe", "arm64", "arm64be", "ppc64",
        "ppc64le", "loong64", "mips", "mipsle", "mips64", "mips64le", "mips64p32",
        "mips64p32le", "ppc", "riscv", "riscv64", "s390", "s390x", "sparc",
        "sparc64", "wasm",
    }
)

_HOST_OS_PREFIXES = (
    ("linux", "linux"),
    ("darwin", "darwin"),
    ("win", "windows"),
    ("cygwin", "windows"),
    ("freebsd", "freebsd"),
    ("openbsd", "openbsd"),
    ("netbsd", "netbsd"),
    ("aix", "aix"),
    ("sunos", "solaris"),
)

_HOST_MACHINES = {
    "x86_64": ("amd64", ""),
    "amd64": ("amd64", ""),
    "aarch64": ("arm64", ""),
    "arm64": ("arm64", ""),
    "armv7l": ("arm", "v7"),
    "armv6l": ("arm", "v6"),
    "armv5tel": ("arm", "v5"),
    "i386": ("386", ""),
    "i686": ("386", ""),
    "x86": ("386", ""),
}


@dataclass(frozen=True)
class Platform:
    """A target platform: operating system, CPU architecture and variant."""

    os: str = ""
    architecture: str = ""
    variant: str = ""
    os_version: str = ""
    os_features: tuple[str, ...] = ()


def _normalize_os(os_name: str) -> str:
    os_name = os_name.lower()
    return "darwin" if os_name == "macos" else os_name


def _normalize_arch(arch: str, variant: str) -> tuple[str, str]:
    arch, variant = arch.lower(), variant.lower()
    if arch == "i386":
        return "386", ""
    if arch in ("x86_64", "x86-64", "amd64"):
        return "amd64", "" if variant == "v1" else variant
    if arch in ("aarch64", "arm64"):
        return "arm64", "" if variant in ("8", "v8") else variant
    if arch == "armhf":
        return "arm", "v7"
    if arch == "armel":
        return "arm", "v6"
    if arch == "arm":
        if variant in ("", "7"):
            return "arm", "v7"
        if variant in ("5", "6", "8"):
            return "arm", "v" + variant
    return arch, variant


def _host_os() -> str:
    for prefix, name in _HOST_OS_PREFIXES:
        if sys.platform.startswith(prefix):
            return name
    return sys.platform


def _host_arch() -> tuple[str, str]:
    machine = _host.machine().lower()
    return _HOST_MACHINES.get(machine) or _normalize_arch(machine, "")


def default_spec() -> Platform:
    """Return the platform of the running host."""
    arch, variant = _host_arch()
    return Platform(os=_host_os(), architecture=arch, variant=variant)


def normalize(platform: Platform) -> Platform:
    """Return the platform with canonical OS, architecture and variant names."""
    arch, variant = _normalize_arch(platform.architecture, platform.variant)
    return replace(
        platform, os=_normalize_os(platform.os), architecture=arch, variant=variant
    )


def format_platform(platform: Platform) -> str:
    """Format a platform as ``os/arch[/variant]``."""
    if not platform.os:
        return "unknown"
    return "/".join(
        part for part in (platform.os, platform.architecture, platform.variant) if part
    )


def parse_platform(spec: str) -> Platform:
    """Parse one ``os[/arch[/variant]]`` specifier."""
    if "*" in spec:
        raise ValueError(f'"{spec}": wildcards not yet supported')
    parts = spec.split("/")
    for part in parts:
        if not _SPECIFIER_RE.match(part):
            raise ValueError(
                f'"{part}" is an invalid component of "{spec}": platform specifier '
                f'component must match "{_SPECIFIER_RE.pattern}"'
            )

    match parts:
        case [single]:
            os_name = _normalize_os(single)
            if os_name in _KNOWN_OS:
                arch, host_variant = _host_arch()
                variant = host_variant if arch == "arm" and host_variant != "v7" else ""
                return Platform(os=os_name, architecture=arch, variant=variant)
            arch, variant = _normalize_arch(single, "")
            if arch == "arm" and variant == "v7":
                variant = ""
            if arch in _KNOWN_ARCH:
                return Platform(os=_host_os(), architecture=arch, variant=variant)
            raise ValueError(f'"{spec}": unknown operating system or architecture')
        case [os_part, arch_part]:
            arch, variant = _normalize_arch(arch_part, "")
            if arch == "arm" and variant == "v7":
                variant = ""
            return Platform(os=_normalize_os(os_part), architecture=arch, variant=variant)
        case [os_part, arch_part, variant_part]:
            arch, variant = _normalize_arch(arch_part, variant_part)
            if arch == "arm64" and not variant:
                variant = "v8"
            return Platform(os=_normalize_os(os_part), architecture=arch, variant=variant)
    raise ValueError(f'"{spec}": cannot parse platform specifier')


def _parse_one(spec: str) -> Platform:
    if spec.lower() == "local":
        return default_spec()
    return parse_platform(spec)


def parse(platforms: Iterable[str]) -> list[Platform]:
    """Parse specifiers, each of which may hold a comma-separated list."""
    out: list[Platform] = []
    for spec in platforms:
        parts = spec.split(",")
        if len(parts) > 1:
            out.extend(parse(parts))
            continue
        out.append(normalize(_parse_one(spec)))
    return out


def dedupe(platforms: Iterable[Platform]) -> list[Platform]:
    """Normalise platforms and drop repeats, keeping first-seen order."""
    seen: set[str] = set()
    out: list[Platform] = []
    for platform in platforms:
        platform = normalize(platform)
        key = format_platform(platform)
        if key in seen:
            continue
        seen.add(key)
        out.append(platform)
    return out


def format_in_groups(*args: Sequence[Platform]) -> list[str]:
    """Format unique platforms across groups, marking the first group with ``*``."""
    seen: set[str] = set()
    out: list[str] = []
    for index, group in enumerate(args):
        for platform in group:
            key = format_platform(normalize(platform))
            if key in seen:
                continue
            seen.add(key)
            out.append(key + "*" if index == 0 else key)
    return out


def format_list(platforms: Iterable[Platform]) -> list[str]:
    """Format each platform as a string."""
    return [format_platform(platform) for platform in platforms]