[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvs"
version = "0.1.0"
description = "A persistent key/value store with a log-structured engine, a TCP server and a client"
requires-python = ">=3.10"
dependencies = []
keywords = ["key-value", "database", "log-structured", "storage-engine", "server", "client", "asyncio"]
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
    "Topic :: Database :: Database Engines/Servers",
    "Framework :: AsyncIO",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
kvs-client = "kvs.client_cli:main"
kvs-server = "kvs.server_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["kvs"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
