[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tusstore"
version = "0.1.0"
description = "Upload stores, file locks and event hooks for tus resumable upload servers"
requires-python = ">=3.10"
keywords = ["tus", "resumable", "upload", "storage", "hooks", "gcs", "lock"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
tusstore = "tusstore.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["tusstore"]

[tool.pytest.ini_options]
addopts = "-ra"
