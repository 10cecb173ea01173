[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "buildxkit"
version = "0.1.0"
description = "Builder instance store, build flag parsing, platform helpers and interactive I/O multiplexing for container image builds"
requires-python = ">=3.10"
keywords = ["build", "container", "buildkit", "platform", "cache", "builder"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "filelock",
    "tomlkit",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["buildxkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
