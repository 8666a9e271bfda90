[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dtmsvr"
version = "0.1.0"
description = "Configuration, storage backends and topic subscriptions for a distributed transaction manager server"
requires-python = ">=3.10"
keywords = ["distributed-transactions", "saga", "tcc", "storage", "redis", "lmdb", "sqlalchemy"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Database",
]
dependencies = [
    "pyyaml",
    "lmdb",
    "redis",
    "sqlalchemy",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dtmsvr"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
