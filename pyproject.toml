[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pxcoperator"
version = "0.1.0"
description = "Cluster resource model, point-in-time recovery and peer discovery tools for Percona XtraDB Cluster"
requires-python = ">=3.10"
keywords = [
    "mysql",
    "galera",
    "xtradb",
    "binlog",
    "point-in-time-recovery",
    "kubernetes",
    "s3",
    "dns-srv",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Archiving :: Backup",
    "Topic :: System :: Clustering",
]
dependencies = [
    "pymysql",
    "requests",
    "dnspython",
    "packaging",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
pxc-pitr-recover = "pxcoperator.pitr.recoverer:main"
peer-list = "pxcoperator.peerlist:main"

[tool.hatch.build.targets.wheel]
packages = ["pxcoperator"]

[tool.hatch.build.targets.sdist]
include = [
    "pxcoperator",
    "tests",
    "pyproject.toml",
]

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
ignore_missing_imports = true
