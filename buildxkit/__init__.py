"""Builder store, build flag parsing, platform, progress and I/O helpers for container image builds."""

__version__ = "0.1.0"

__all__ = [
    "buildflags",
    "confutil",
    "logutil",
    "monitor",
    "platformutil",
    "progress",
    "store",
    "version",
    "waitmap",
]