"""Build identification, overridden by release tooling."""

PACKAGE = "buildxkit"

VERSION = "0.0.0+unknown"

REVISION = ""